"""Session resource state machine: judgment status of a scheduled appeal."""

from __future__ import annotations

import structlog

from .db import Database, new_id
from .directory import DatabaseDirectory, ImpedimentSource
from .distribution import drop_session_reviewers
from .errors import ConflictError, StateError, ValidationError
from .lookups import (
    require_admin,
    require_judging_session,
    require_session,
    require_session_resource,
)
from .models import (
    APPEAL_STATUS,
    Actor,
    PreliminaryOutcome,
    SessionResource,
    SessionResourceStatus,
    SessionStatus,
    VoteRole,
    VotingKind,
    VotingStatus,
)
from .notifier import Notifier

log = structlog.get_logger(__name__)

_CLEARED_RESULT = {
    "status": SessionResourceStatus.EM_PAUTA,
    "minutes_text": "",
    "diligence_days": None,
    "view_requested_by": None,
}


class AgendaService:
    """Scheduling and status transitions of session resources."""

    def __init__(
        self,
        db: Database,
        directory: ImpedimentSource | None = None,
        notifier: Notifier | None = None,
        minutes_placeholder: str = "[DETALHAR]",
    ):
        self.db = db
        self.directory = directory or DatabaseDirectory(db)
        self.notifier = notifier
        self.minutes_placeholder = minutes_placeholder

    # ---------------------------------------------------------------
    # Scheduling
    # ---------------------------------------------------------------

    async def schedule(self, session_id: str, resource_id: str) -> SessionResource:
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            if session.status in (SessionStatus.CONCLUIDA, SessionStatus.CANCELADA):
                raise StateError(
                    f"session {session_id} is {session.status.value}", entity=session_id,
                )
            if await db.find_session_resource(session_id, resource_id) is not None:
                raise ConflictError(
                    f"resource {resource_id} is already on the agenda", entity=resource_id,
                )
            sr = SessionResource(
                id=new_id(),
                session_id=session_id,
                resource_id=resource_id,
                position=await db.max_position(session_id) + 1,
            )
            await db.insert_session_resource(sr)
        log.info("agenda.scheduled", session_id=session_id, resource_id=resource_id,
                 session_resource_id=sr.id)
        return sr

    async def get(self, session_resource_id: str) -> SessionResource:
        async with self.db.transaction() as db:
            return await require_session_resource(db, session_resource_id)

    # ---------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------

    async def set_status(
        self,
        session_resource_id: str,
        status: SessionResourceStatus,
        *,
        minutes_text: str,
        diligence_days: int | None = None,
        view_requested_by: str | None = None,
    ) -> SessionResource:
        """Move an EM_PAUTA resource to one of the terminal outcomes."""
        if status == SessionResourceStatus.EM_PAUTA:
            raise ValidationError(
                "use remove_result to put a resource back on the agenda",
                entity=session_resource_id,
            )
        self._check_minutes(minutes_text, session_resource_id)

        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            session = await require_judging_session(db, sr.session_id)
            if sr.status != SessionResourceStatus.EM_PAUTA:
                raise StateError(
                    f"resource {sr.resource_id} is already {sr.status.value}; remove the result first",
                    entity=sr.id,
                )

            changes: dict = {
                "status": status,
                "minutes_text": minutes_text.strip(),
                "diligence_days": None,
                "view_requested_by": None,
            }
            if status == SessionResourceStatus.DILIGENCIA:
                if (
                    not isinstance(diligence_days, int)
                    or isinstance(diligence_days, bool)
                    or diligence_days <= 0
                ):
                    raise ValidationError(
                        "diligence requires a positive number of days", entity=sr.id,
                    )
                changes["diligence_days"] = diligence_days
            elif status == SessionResourceStatus.PEDIDO_VISTA:
                if not view_requested_by:
                    raise ValidationError(
                        "a view request requires the requesting member", entity=sr.id,
                    )
                if view_requested_by not in session.member_ids:
                    raise ValidationError(
                        f"member {view_requested_by} does not take part in the session",
                        entity=view_requested_by,
                    )
                if view_requested_by in await self.directory.impeded_members(sr.resource_id):
                    raise ValidationError(
                        f"member {view_requested_by} is impeded for this resource",
                        entity=view_requested_by,
                    )
                changes["view_requested_by"] = view_requested_by
            elif status == SessionResourceStatus.JULGADO:
                await self._check_judgment(db, sr)

            await db.update_session_resource(sr.id, **changes)
            await db.log_event(sr.id, "status_changed", {
                "from": sr.status.value, "to": status.value,
            })
            sr = await db.get_session_resource(sr.id)

        await self._announce(sr)
        return sr

    async def suspend(self, session_resource_id: str, minutes_text: str) -> SessionResource:
        return await self.set_status(
            session_resource_id, SessionResourceStatus.SUSPENSO, minutes_text=minutes_text,
        )

    async def request_diligence(
        self, session_resource_id: str, minutes_text: str, days: int
    ) -> SessionResource:
        return await self.set_status(
            session_resource_id, SessionResourceStatus.DILIGENCIA,
            minutes_text=minutes_text, diligence_days=days,
        )

    async def request_view(
        self, session_resource_id: str, minutes_text: str, member_id: str
    ) -> SessionResource:
        return await self.set_status(
            session_resource_id, SessionResourceStatus.PEDIDO_VISTA,
            minutes_text=minutes_text, view_requested_by=member_id,
        )

    async def judge(self, session_resource_id: str, minutes_text: str) -> SessionResource:
        return await self.set_status(
            session_resource_id, SessionResourceStatus.JULGADO, minutes_text=minutes_text,
        )

    async def remove_result(self, session_resource_id: str, actor: Actor) -> SessionResource:
        """Return a decided resource to EM_PAUTA, deleting this cycle's votings."""
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            if sr.status == SessionResourceStatus.EM_PAUTA:
                raise StateError(
                    f"resource {sr.resource_id} has no result to remove", entity=sr.id,
                )
            await require_judging_session(db, sr.session_id)
            reviewers = [
                v.member_id
                for voting in await db.list_votings(sr.id)
                for v in await db.list_votes(voting.id)
                if v.role == VoteRole.REVISOR
            ]
            reviewers += [
                v.member_id for v in await db.list_unattached_votes(sr.id)
                if v.role == VoteRole.REVISOR
            ]
            deleted = await db.delete_session_judgment(sr.id)
            await drop_session_reviewers(db, sr.resource_id, sr.id, reviewers)
            await db.update_session_resource(sr.id, **_CLEARED_RESULT)
            await db.log_event(sr.id, "result_removed", {
                "from": sr.status.value, "by": actor.user, "votings_deleted": deleted,
            })
            sr = await db.get_session_resource(sr.id)

        log.info("agenda.result_removed", session_resource_id=sr.id,
                 user=actor.user, votings_deleted=deleted)
        await self._announce(sr)
        return sr

    async def revert_judgment(self, session_resource_id: str, actor: Actor) -> SessionResource:
        """Return a JULGADO resource to EM_PAUTA keeping its votings."""
        require_admin(actor, "revert a judgment")
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            if sr.status != SessionResourceStatus.JULGADO:
                raise StateError(
                    f"resource {sr.resource_id} is not judged", entity=sr.id,
                )
            await require_judging_session(db, sr.session_id)
            await db.update_session_resource(sr.id, status=SessionResourceStatus.EM_PAUTA)
            await db.log_event(sr.id, "judgment_reverted", {"by": actor.user})
            sr = await db.get_session_resource(sr.id)

        log.info("agenda.judgment_reverted", session_resource_id=sr.id, user=actor.user)
        await self._announce(sr)
        return sr

    # ---------------------------------------------------------------
    # Per-resource participation
    # ---------------------------------------------------------------

    async def set_absences(
        self, session_resource_id: str, member_ids: list[str]
    ) -> SessionResource:
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            session = await require_judging_session(db, sr.session_id)
            for member_id in member_ids:
                if member_id not in session.member_ids:
                    raise ValidationError(
                        f"member {member_id} does not take part in the session",
                        entity=member_id,
                    )
            if any(
                v.status == VotingStatus.CONCLUIDA and v.judged_in_session_id == sr.session_id
                for v in await db.list_resource_votings(sr.resource_id)
            ):
                raise StateError(
                    "absences cannot change once a voting was concluded in this session",
                    entity=sr.id,
                )
            absent = list(dict.fromkeys(member_ids))
            await db.update_session_resource(sr.id, absent_member_ids=absent)
            sr = await db.get_session_resource(sr.id)
        log.info("agenda.absences_set", session_resource_id=sr.id, absent=absent)
        return sr

    async def set_specific_president(
        self, session_resource_id: str, member_id: str | None
    ) -> SessionResource:
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            session = await require_judging_session(db, sr.session_id)
            if member_id is not None and member_id not in session.member_ids:
                raise ValidationError(
                    f"member {member_id} does not take part in the session", entity=member_id,
                )
            await db.update_session_resource(sr.id, specific_president_id=member_id)
            return await db.get_session_resource(sr.id)

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    def _check_minutes(self, text: str | None, entity: str) -> None:
        if not text or not text.strip():
            raise ValidationError("minutes text is required", entity=entity)
        if self.minutes_placeholder and self.minutes_placeholder in text:
            raise ValidationError(
                f"minutes text still contains {self.minutes_placeholder}", entity=entity,
            )

    async def _check_judgment(self, db: Database, sr: SessionResource) -> None:
        votings = await db.list_resource_votings(sr.resource_id)
        if not any(
            v.status == VotingStatus.CONCLUIDA and v.judged_in_session_id == sr.session_id
            for v in votings
        ):
            raise StateError(
                "judgment requires a voting concluded in this session", entity=sr.id,
            )
        # Votings left open in an earlier session block the judgment too.
        pending = next((v for v in votings if v.status != VotingStatus.CONCLUIDA), None)
        if pending is not None:
            raise StateError(
                f"voting {pending.label} of session {pending.session_id} is still open",
                entity=pending.id,
            )

        merits = [v for v in votings if v.kind == VotingKind.MERITO]
        not_admitted = False
        for v in votings:
            if v.kind != VotingKind.NAO_CONHECIMENTO or not v.winning_vote_id:
                continue
            winning = await db.get_vote(v.winning_vote_id)
            if winning is None:
                continue
            if winning.preliminary_outcome == PreliminaryOutcome.ACATAR or (
                not winning.preliminary_decision_id and winning.official_decision_id
            ):
                not_admitted = True

        if merits and not_admitted:
            raise StateError(
                "the appeal was not admitted; the merits cannot also be judged", entity=sr.id,
            )
        if not merits and not not_admitted:
            raise StateError(
                "judgment requires a merits voting or an accepted non-admission", entity=sr.id,
            )

    async def _announce(self, sr: SessionResource) -> None:
        log.info("resource.status_changed", session_resource_id=sr.id,
                 resource_id=sr.resource_id, status=sr.status.value,
                 appeal_status=APPEAL_STATUS[sr.status])
        if self.notifier is None:
            return
        await self.notifier.notify("resource.status_changed", {
            "session_resource_id": sr.id,
            "session_id": sr.session_id,
            "resource_id": sr.resource_id,
            "status": sr.status.value,
            "appeal_status": APPEAL_STATUS[sr.status],
            "minutes_text": sr.minutes_text,
            "diligence_days": sr.diligence_days,
            "view_requested_by": sr.view_requested_by,
        })
