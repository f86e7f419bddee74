"""Fetch-or-raise helpers shared by the judgment services."""

from __future__ import annotations

from .db import Database
from .errors import AuthorizationError, NotFoundError, StateError
from .models import Actor, Session, SessionResource, SessionStatus, Voting


async def require_session(db: Database, session_id: str) -> Session:
    session = await db.get_session(session_id)
    if session is None:
        raise NotFoundError(f"session {session_id} not found", entity=session_id)
    return session


async def require_session_resource(db: Database, sr_id: str) -> SessionResource:
    sr = await db.get_session_resource(sr_id)
    if sr is None:
        raise NotFoundError(f"session resource {sr_id} not found", entity=sr_id)
    return sr


async def require_voting(db: Database, voting_id: str) -> Voting:
    voting = await db.get_voting(voting_id)
    if voting is None:
        raise NotFoundError(f"voting {voting_id} not found", entity=voting_id)
    return voting


async def require_member(db: Database, member_id: str) -> None:
    if await db.get_member(member_id) is None:
        raise NotFoundError(f"member {member_id} not found", entity=member_id)


async def require_judging_session(db: Database, session_id: str) -> Session:
    """The session must be open for judgment (published, not concluded)."""
    session = await require_session(db, session_id)
    if session.status != SessionStatus.PENDENTE:
        raise StateError(
            f"session {session_id} is {session.status.value}; judgment requires PENDENTE",
            entity=session_id,
        )
    return session


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise AuthorizationError(
            f"only administrators may {action}", entity=actor.user,
        )
