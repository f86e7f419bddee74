"""Distribution ledger: rapporteur/reviewer assignment per resource and session."""

from __future__ import annotations

import structlog

from .db import Database, new_id
from .errors import DuplicateDistributionError, NotFoundError, StateError, ValidationError
from .lookups import require_member, require_session
from .models import CarryForwardReport, Distribution, SessionStatus, VoteRole

log = structlog.get_logger(__name__)

_CLOSED_SESSIONS = (SessionStatus.CONCLUIDA, SessionStatus.CANCELADA)


async def _require_open_session(db: Database, session_id: str) -> None:
    session = await require_session(db, session_id)
    if session.status in _CLOSED_SESSIONS:
        raise StateError(
            f"session {session_id} is {session.status.value}; distributions are closed",
            entity=session_id,
        )


async def _record(
    db: Database,
    resource_id: str,
    session_id: str,
    rapporteur_id: str,
    reviewer_ids: list[str],
    carried_from: str | None = None,
) -> Distribution:
    previous = await db.list_distributions(resource_id)
    await db.deactivate_distributions(resource_id)
    dist = Distribution(
        id=new_id(),
        resource_id=resource_id,
        session_id=session_id,
        rapporteur_id=rapporteur_id,
        reviewer_ids=list(reviewer_ids),
        number=len(previous) + 1,
        carried_from_session_id=carried_from,
    )
    await db.insert_distribution(dist)
    return dist


async def add_reviewer(
    db: Database, resource_id: str, member_id: str, session_resource_id: str
) -> bool:
    """Add a reviewer to the active distribution. Returns True if added."""
    dist = await db.active_distribution(resource_id)
    if dist is None or member_id in dist.reviewer_ids or member_id == dist.rapporteur_id:
        return False
    await db.update_reviewers(dist.id, dist.reviewer_ids + [member_id])
    await db.log_event(dist.id, "reviewer_added", {
        "member_id": member_id,
        "session_resource_id": session_resource_id,
    })
    return True


async def drop_session_reviewers(
    db: Database, resource_id: str, session_resource_id: str, reviewers: list[str]
) -> list[str]:
    """Undo ``add_reviewer`` for positions deleted from a session resource.

    Only reviewers whose ``reviewer_added`` entry names this session resource
    are dropped, and only while they hold no REVISOR position in a remaining
    voting of the resource. Returns the dropped member ids.
    """
    if not reviewers:
        return []
    dist = await db.active_distribution(resource_id)
    if dist is None:
        return []
    added_here = {
        entry["detail"]["member_id"]
        for entry in await db.get_logs(dist.id)
        if entry["event"] == "reviewer_added"
        and entry["detail"]["session_resource_id"] == session_resource_id
    }
    still_reviewing: set[str] = set()
    for other in await db.list_resource_votings(resource_id):
        still_reviewing.update(
            v.member_id for v in await db.list_votes(other.id)
            if v.role == VoteRole.REVISOR
        )
    dropped = [
        r for r in dist.reviewer_ids
        if r in reviewers and r in added_here and r not in still_reviewing
    ]
    if dropped:
        await db.update_reviewers(
            dist.id, [r for r in dist.reviewer_ids if r not in dropped],
        )
        await db.log_event(dist.id, "reviewers_dropped", {
            "member_ids": dropped,
            "session_resource_id": session_resource_id,
        })
    return dropped


async def _carry(
    db: Database, resource_id: str, from_session_id: str, to_session_id: str
) -> Distribution | None:
    if await db.get_distribution_in_session(resource_id, to_session_id) is not None:
        return None
    source = await db.get_distribution_in_session(resource_id, from_session_id)
    if source is None:
        history = await db.list_distributions(resource_id)
        source = history[-1] if history else None
    if source is None:
        raise NotFoundError(
            f"resource {resource_id} has no distribution to carry forward",
            entity=resource_id,
        )
    return await _record(
        db, resource_id, to_session_id, source.rapporteur_id, source.reviewer_ids,
        carried_from=source.session_id,
    )


class DistributionLedger:
    def __init__(self, db: Database):
        self.db = db

    async def assign(
        self,
        resource_id: str,
        session_id: str,
        rapporteur_id: str,
        reviewer_ids: list[str] | None = None,
    ) -> Distribution:
        reviewer_ids = list(reviewer_ids or [])
        if not rapporteur_id:
            raise ValidationError("a rapporteur is required", entity=resource_id)
        if rapporteur_id in reviewer_ids:
            raise ValidationError(
                "the rapporteur cannot also be a reviewer", entity=rapporteur_id,
            )
        if len(set(reviewer_ids)) != len(reviewer_ids):
            raise ValidationError("reviewers must be distinct", entity=resource_id)

        async with self.db.transaction() as db:
            await _require_open_session(db, session_id)
            for member_id in [rapporteur_id, *reviewer_ids]:
                await require_member(db, member_id)
            if await db.get_distribution_in_session(resource_id, session_id) is not None:
                raise DuplicateDistributionError(
                    f"resource {resource_id} is already distributed in session {session_id}",
                    entity=resource_id,
                )
            dist = await _record(db, resource_id, session_id, rapporteur_id, reviewer_ids)

        log.info("distribution.assigned", resource_id=resource_id, session_id=session_id,
                 rapporteur=rapporteur_id, reviewers=reviewer_ids, number=dist.number)
        return dist

    async def carry_forward(
        self, resource_id: str, from_session_id: str, to_session_id: str
    ) -> Distribution | None:
        """Copy the latest assignment into ``to_session_id``.

        Returns None when the resource is already distributed there.
        """
        async with self.db.transaction() as db:
            await require_session(db, from_session_id)
            await _require_open_session(db, to_session_id)
            dist = await _carry(db, resource_id, from_session_id, to_session_id)
        log.info("distribution.carry_forward", resource_id=resource_id,
                 to_session_id=to_session_id, skipped=dist is None)
        return dist

    async def carry_forward_agenda(
        self, from_session_id: str, to_session_id: str
    ) -> CarryForwardReport:
        """Carry every resource on a session's agenda into another session."""
        report = CarryForwardReport()
        async with self.db.transaction() as db:
            await require_session(db, from_session_id)
            await _require_open_session(db, to_session_id)
            for sr in await db.list_session_resources(from_session_id):
                try:
                    dist = await _carry(db, sr.resource_id, from_session_id, to_session_id)
                except NotFoundError:
                    report.missing.append(sr.resource_id)
                    continue
                if dist is None:
                    report.skipped.append(sr.resource_id)
                else:
                    report.created.append(dist)

        log.info("distribution.carry_forward", from_session_id=from_session_id,
                 to_session_id=to_session_id, created=len(report.created),
                 skipped=len(report.skipped), missing=len(report.missing))
        return report

    async def active(self, resource_id: str) -> Distribution | None:
        async with self.db.transaction() as db:
            return await db.active_distribution(resource_id)

    async def history(self, resource_id: str) -> list[Distribution]:
        async with self.db.transaction() as db:
            return await db.list_distributions(resource_id)
