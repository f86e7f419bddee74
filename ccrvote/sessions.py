"""Session state machine: publication, completion, cancellation, reversal."""

from __future__ import annotations

import structlog

from .db import Database, new_id
from .errors import IncompleteAgendaError, StateError, ValidationError
from .lookups import require_admin, require_member, require_session
from .models import TERMINAL_RESOURCE_STATUSES, Actor, Session, SessionStatus
from .notifier import Notifier

log = structlog.get_logger(__name__)


def _require_status(session: Session, *allowed: SessionStatus) -> None:
    if session.status not in allowed:
        expected = " or ".join(s.value for s in allowed)
        raise StateError(
            f"session {session.id} is {session.status.value}; expected {expected}",
            entity=session.id,
        )


class SessionService:
    def __init__(self, db: Database, notifier: Notifier | None = None):
        self.db = db
        self.notifier = notifier

    async def create(
        self,
        number: str,
        date: str,
        member_ids: list[str],
        president_id: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        if not number or not date:
            raise ValidationError("a session requires a number and a date")
        session = Session(
            id=session_id or new_id(),
            number=number,
            date=date,
            president_id=president_id,
            member_ids=list(dict.fromkeys(member_ids)),
        )
        async with self.db.transaction() as db:
            for member_id in session.member_ids:
                await require_member(db, member_id)
            if president_id:
                await require_member(db, president_id)
            await db.insert_session(session)
        log.info("session.created", session_id=session.id, number=number, date=date)
        return session

    async def get(self, session_id: str) -> Session:
        async with self.db.transaction() as db:
            return await require_session(db, session_id)

    async def publish(
        self, session_id: str, publication_number: str, publication_date: str
    ) -> Session:
        if not publication_number or not publication_date:
            raise ValidationError(
                "publication number and date are both required", entity=session_id,
            )
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            _require_status(session, SessionStatus.PUBLICACAO)
            await db.update_session(
                session_id,
                status=SessionStatus.PENDENTE,
                publication_number=publication_number,
                publication_date=publication_date,
            )
            session = await db.get_session(session_id)
        log.info("session.published", session_id=session_id,
                 publication_number=publication_number)
        return session

    async def set_administrative_matters(self, session_id: str, text: str) -> Session:
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            _require_status(session, SessionStatus.PUBLICACAO, SessionStatus.PENDENTE)
            await db.update_session(session_id, administrative_matters=text or "")
            return await db.get_session(session_id)

    async def complete(self, session_id: str) -> Session:
        """Close the session once every scheduled resource reached an outcome."""
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            _require_status(session, SessionStatus.PENDENTE)
            resources = await db.list_session_resources(session_id)
            if not resources and not session.administrative_matters.strip():
                raise IncompleteAgendaError(
                    "a session without resources requires administrative matters",
                    entity=session_id,
                )
            for sr in resources:
                if sr.status not in TERMINAL_RESOURCE_STATUSES:
                    raise IncompleteAgendaError(
                        f"resource {sr.resource_id} is still {sr.status.value}",
                        entity=sr.resource_id,
                        session_resource_id=sr.id,
                    )
            await db.update_session(session_id, status=SessionStatus.CONCLUIDA)
            await db.log_event(session_id, "completed", {"resources": len(resources)})
            session = await db.get_session(session_id)

        log.info("session.completed", session_id=session_id, resources=len(resources))
        if self.notifier:
            await self.notifier.notify("session.completed", {
                "session_id": session_id,
                "number": session.number,
                "date": session.date,
                "resources": [
                    {"resource_id": sr.resource_id, "status": sr.status.value}
                    for sr in resources
                ],
            })
        return session

    async def cancel(self, session_id: str) -> Session:
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            _require_status(session, SessionStatus.PUBLICACAO, SessionStatus.PENDENTE)
            await db.update_session(session_id, status=SessionStatus.CANCELADA)
            await db.log_event(session_id, "cancelled")
            session = await db.get_session(session_id)
        log.info("session.cancelled", session_id=session_id)
        return session

    async def revert(self, session_id: str, actor: Actor) -> Session:
        """Reopen a concluded session; resource statuses are left untouched."""
        require_admin(actor, "revert a concluded session")
        async with self.db.transaction() as db:
            session = await require_session(db, session_id)
            _require_status(session, SessionStatus.CONCLUIDA)
            await db.update_session(session_id, status=SessionStatus.PENDENTE)
            await db.log_event(session_id, "reverted", {"by": actor.user})
            session = await db.get_session(session_id)

        log.info("session.reverted", session_id=session_id, user=actor.user)
        if self.notifier:
            await self.notifier.notify("session.reverted", {
                "session_id": session_id, "user": actor.user,
            })
        return session
