"""SQLite state persistence with explicit write transactions."""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import AsyncIterator

import aiosqlite
import anyio

from .models import (
    Distribution,
    Gender,
    Member,
    ParticipationStatus,
    PreliminaryOutcome,
    Session,
    SessionResource,
    SessionResourceStatus,
    SessionStatus,
    Vote,
    VoteRole,
    Voting,
    VotingKind,
    VotingStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS members (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT DEFAULT '',
    gender TEXT NOT NULL DEFAULT 'MASCULINO',
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    number TEXT NOT NULL,
    date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PUBLICACAO',
    president_id TEXT REFERENCES members(id),
    member_ids TEXT DEFAULT '[]',
    administrative_matters TEXT DEFAULT '',
    publication_number TEXT DEFAULT '',
    publication_date TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_resources (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id),
    resource_id TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'EM_PAUTA',
    minutes_text TEXT DEFAULT '',
    diligence_days INTEGER,
    view_requested_by TEXT,
    specific_president_id TEXT,
    absent_member_ids TEXT DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (session_id, resource_id)
);

CREATE TABLE IF NOT EXISTS impediments (
    resource_id TEXT NOT NULL,
    member_id TEXT NOT NULL,
    reason TEXT DEFAULT '',
    PRIMARY KEY (resource_id, member_id)
);

CREATE TABLE IF NOT EXISTS distributions (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL,
    session_id TEXT NOT NULL REFERENCES sessions(id),
    rapporteur_id TEXT NOT NULL,
    reviewer_ids TEXT DEFAULT '[]',
    number INTEGER NOT NULL DEFAULT 1,
    is_active INTEGER NOT NULL DEFAULT 1,
    carried_from_session_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (resource_id, session_id)
);

CREATE TABLE IF NOT EXISTS votings (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL,
    session_resource_id TEXT NOT NULL REFERENCES session_resources(id),
    session_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDENTE',
    preliminary_decision_id TEXT,
    "order" INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT DEFAULT '',
    judged_in_session_id TEXT,
    winning_vote_id TEXT,
    winning_member_id TEXT,
    winning_vote_count INTEGER DEFAULT 0,
    quality_vote_used INTEGER DEFAULT 0,
    quality_vote_member_id TEXT,
    total_votes INTEGER DEFAULT 0,
    votes_in_favor INTEGER DEFAULT 0,
    votes_against INTEGER DEFAULT 0,
    abstentions INTEGER DEFAULT 0,
    absences INTEGER DEFAULT 0,
    impediments INTEGER DEFAULT 0,
    suspicions INTEGER DEFAULT 0,
    final_text TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS votes (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    session_resource_id TEXT NOT NULL REFERENCES session_resources(id),
    member_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    role TEXT NOT NULL,
    participation TEXT NOT NULL DEFAULT 'PRESENTE',
    voting_id TEXT REFERENCES votings(id),
    follows_vote_id TEXT REFERENCES votes(id),
    preliminary_decision_id TEXT,
    preliminary_outcome TEXT,
    merit_decision_id TEXT,
    official_decision_id TEXT,
    text TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS judgment_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id TEXT NOT NULL,
    event TEXT NOT NULL,
    detail TEXT,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_votes_voting_member
    ON votes(voting_id, member_id) WHERE voting_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_votings_open_question
    ON votings(session_resource_id, kind, COALESCE(preliminary_decision_id, ''))
    WHERE status = 'PENDENTE';
CREATE INDEX IF NOT EXISTS idx_votes_session_resource ON votes(session_resource_id);
CREATE INDEX IF NOT EXISTS idx_votings_session_resource ON votings(session_resource_id);
CREATE INDEX IF NOT EXISTS idx_session_resources_session ON session_resources(session_id);
CREATE INDEX IF NOT EXISTS idx_distributions_resource ON distributions(resource_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def _encode(value):
    if isinstance(value, list):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _quote(column: str) -> str:
    return f'"{column}"'


class Database:
    def __init__(self, db_path: str, busy_timeout_sec: float = 5.0):
        self.db_path = db_path
        self.busy_timeout_sec = busy_timeout_sec
        self._conn: aiosqlite.Connection | None = None
        self._lock = anyio.Lock()

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout_sec, isolation_level=None,
        )
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Database"]:
        """One atomic unit of work.

        The in-process lock serialises coroutines sharing this connection;
        BEGIN IMMEDIATE serialises writers on other connections.
        """
        async with self._lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            else:
                await self._conn.execute("COMMIT")

    # ---------------------------------------------------------------
    # Generic helpers
    # ---------------------------------------------------------------

    async def _insert(self, table: str, row: dict) -> None:
        columns = ", ".join(_quote(c) for c in row)
        marks = ", ".join("?" for _ in row)
        await self._conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({marks})",
            tuple(_encode(v) for v in row.values()),
        )

    async def _update(self, table: str, row_id: str, changes: dict) -> None:
        assignments = ", ".join(f"{_quote(c)} = ?" for c in changes)
        await self._conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*(_encode(v) for v in changes.values()), row_id),
        )

    async def _fetchone(self, sql: str, params: tuple = ()):
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()):
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchall()

    # ---------------------------------------------------------------
    # Members (reference data)
    # ---------------------------------------------------------------

    async def upsert_member(self, member: Member) -> None:
        await self._conn.execute(
            """INSERT INTO members (id, name, role, gender, active)
               VALUES (?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 name=excluded.name,
                 role=excluded.role,
                 gender=excluded.gender,
                 active=excluded.active
            """,
            (member.id, member.name, member.role, member.gender.value, int(member.active)),
        )

    async def get_member(self, member_id: str) -> Member | None:
        row = await self._fetchone("SELECT * FROM members WHERE id = ?", (member_id,))
        return self._row_to_member(row) if row else None

    async def list_members(self, ids: list[str] | None = None) -> list[Member]:
        rows = await self._fetchall("SELECT * FROM members ORDER BY name")
        members = [self._row_to_member(r) for r in rows]
        if ids is None:
            return members
        by_id = {m.id: m for m in members}
        return [by_id[i] for i in ids if i in by_id]


    # ---------------------------------------------------------------
    # Sessions
    # ---------------------------------------------------------------

    async def insert_session(self, session: Session) -> None:
        now = _now()
        session.created_at = session.created_at or now
        session.updated_at = now
        await self._insert("sessions", asdict(session))

    async def get_session(self, session_id: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    async def update_session(self, session_id: str, **changes) -> None:
        changes["updated_at"] = _now()
        await self._update("sessions", session_id, changes)

    # ---------------------------------------------------------------
    # Session resources
    # ---------------------------------------------------------------

    async def insert_session_resource(self, sr: SessionResource) -> None:
        now = _now()
        sr.created_at = sr.created_at or now
        sr.updated_at = now
        await self._insert("session_resources", asdict(sr))

    async def get_session_resource(self, sr_id: str) -> SessionResource | None:
        row = await self._fetchone("SELECT * FROM session_resources WHERE id = ?", (sr_id,))
        return self._row_to_session_resource(row) if row else None

    async def find_session_resource(
        self, session_id: str, resource_id: str
    ) -> SessionResource | None:
        row = await self._fetchone(
            "SELECT * FROM session_resources WHERE session_id = ? AND resource_id = ?",
            (session_id, resource_id),
        )
        return self._row_to_session_resource(row) if row else None

    async def list_session_resources(self, session_id: str) -> list[SessionResource]:
        rows = await self._fetchall(
            "SELECT * FROM session_resources WHERE session_id = ? ORDER BY position, created_at",
            (session_id,),
        )
        return [self._row_to_session_resource(r) for r in rows]

    async def max_position(self, session_id: str) -> int:
        row = await self._fetchone(
            "SELECT COALESCE(MAX(position), 0) AS m FROM session_resources WHERE session_id = ?",
            (session_id,),
        )
        return row["m"]

    async def update_session_resource(self, sr_id: str, **changes) -> None:
        changes["updated_at"] = _now()
        await self._update("session_resources", sr_id, changes)

    # ---------------------------------------------------------------
    # Impediments (registered conflicts of interest)
    # ---------------------------------------------------------------

    async def add_impediment(self, resource_id: str, member_id: str, reason: str = "") -> None:
        await self._conn.execute(
            """INSERT INTO impediments (resource_id, member_id, reason) VALUES (?,?,?)
               ON CONFLICT(resource_id, member_id) DO UPDATE SET reason=excluded.reason""",
            (resource_id, member_id, reason),
        )

    async def list_impediments(self, resource_id: str) -> list[str]:
        rows = await self._fetchall(
            "SELECT member_id FROM impediments WHERE resource_id = ? ORDER BY member_id",
            (resource_id,),
        )
        return [r["member_id"] for r in rows]

    # ---------------------------------------------------------------
    # Distributions
    # ---------------------------------------------------------------

    async def insert_distribution(self, dist: Distribution) -> None:
        dist.created_at = dist.created_at or _now()
        await self._insert("distributions", asdict(dist))

    async def get_distribution_in_session(
        self, resource_id: str, session_id: str
    ) -> Distribution | None:
        row = await self._fetchone(
            "SELECT * FROM distributions WHERE resource_id = ? AND session_id = ?",
            (resource_id, session_id),
        )
        return self._row_to_distribution(row) if row else None

    async def list_distributions(self, resource_id: str) -> list[Distribution]:
        rows = await self._fetchall(
            "SELECT * FROM distributions WHERE resource_id = ? ORDER BY number",
            (resource_id,),
        )
        return [self._row_to_distribution(r) for r in rows]

    async def active_distribution(self, resource_id: str) -> Distribution | None:
        row = await self._fetchone(
            """SELECT * FROM distributions WHERE resource_id = ? AND is_active = 1
               ORDER BY number DESC LIMIT 1""",
            (resource_id,),
        )
        return self._row_to_distribution(row) if row else None

    async def deactivate_distributions(self, resource_id: str) -> None:
        await self._conn.execute(
            "UPDATE distributions SET is_active = 0 WHERE resource_id = ?",
            (resource_id,),
        )

    async def update_reviewers(self, distribution_id: str, reviewer_ids: list[str]) -> None:
        await self._update("distributions", distribution_id, {"reviewer_ids": reviewer_ids})

    # ---------------------------------------------------------------
    # Votings
    # ---------------------------------------------------------------

    async def insert_voting(self, voting: Voting) -> None:
        now = _now()
        voting.created_at = voting.created_at or now
        voting.updated_at = now
        await self._insert("votings", asdict(voting))

    async def get_voting(self, voting_id: str) -> Voting | None:
        row = await self._fetchone("SELECT * FROM votings WHERE id = ?", (voting_id,))
        return self._row_to_voting(row) if row else None

    async def list_votings(self, session_resource_id: str) -> list[Voting]:
        rows = await self._fetchall(
            'SELECT * FROM votings WHERE session_resource_id = ? ORDER BY "order", created_at',
            (session_resource_id,),
        )
        return [self._row_to_voting(r) for r in rows]

    async def list_resource_votings(self, resource_id: str) -> list[Voting]:
        rows = await self._fetchall(
            'SELECT * FROM votings WHERE resource_id = ? ORDER BY "order", created_at',
            (resource_id,),
        )
        return [self._row_to_voting(r) for r in rows]

    async def find_open_voting(
        self, session_resource_id: str, kind: VotingKind, preliminary_decision_id: str | None
    ) -> Voting | None:
        row = await self._fetchone(
            """SELECT * FROM votings
               WHERE session_resource_id = ? AND kind = ? AND status = 'PENDENTE'
                 AND COALESCE(preliminary_decision_id, '') = ?""",
            (session_resource_id, kind.value, preliminary_decision_id or ""),
        )
        return self._row_to_voting(row) if row else None

    async def max_voting_order(self, resource_id: str) -> int:
        row = await self._fetchone(
            'SELECT COALESCE(MAX("order"), 0) AS m FROM votings WHERE resource_id = ?',
            (resource_id,),
        )
        return row["m"]

    async def update_voting(self, voting_id: str, **changes) -> None:
        changes["updated_at"] = _now()
        await self._update("votings", voting_id, changes)

    async def delete_voting(self, voting_id: str) -> None:
        await self._conn.execute(
            "UPDATE votes SET follows_vote_id = NULL WHERE voting_id = ?", (voting_id,)
        )
        await self._conn.execute("DELETE FROM votes WHERE voting_id = ?", (voting_id,))
        await self._conn.execute("DELETE FROM votings WHERE id = ?", (voting_id,))

    # ---------------------------------------------------------------
    # Votes
    # ---------------------------------------------------------------

    async def insert_vote(self, vote: Vote) -> None:
        vote.created_at = vote.created_at or _now()
        await self._insert("votes", asdict(vote))

    async def update_vote(self, vote_id: str, **changes) -> None:
        await self._update("votes", vote_id, changes)

    async def get_vote(self, vote_id: str) -> Vote | None:
        row = await self._fetchone("SELECT * FROM votes WHERE id = ?", (vote_id,))
        return self._row_to_vote(row) if row else None

    async def list_votes(self, voting_id: str) -> list[Vote]:
        rows = await self._fetchall(
            "SELECT * FROM votes WHERE voting_id = ? ORDER BY created_at, rowid",
            (voting_id,),
        )
        return [self._row_to_vote(r) for r in rows]

    async def list_unattached_votes(self, session_resource_id: str) -> list[Vote]:
        rows = await self._fetchall(
            """SELECT * FROM votes WHERE session_resource_id = ? AND voting_id IS NULL
               ORDER BY created_at, rowid""",
            (session_resource_id,),
        )
        return [self._row_to_vote(r) for r in rows]

    async def find_member_vote(self, voting_id: str, member_id: str) -> Vote | None:
        row = await self._fetchone(
            "SELECT * FROM votes WHERE voting_id = ? AND member_id = ?",
            (voting_id, member_id),
        )
        return self._row_to_vote(row) if row else None

    async def find_position(
        self,
        session_resource_id: str,
        member_id: str,
        kind: VotingKind,
        preliminary_decision_id: str | None,
    ) -> Vote | None:
        """An anchor vote already recorded by a member for the same question."""
        sql = """SELECT * FROM votes
                 WHERE session_resource_id = ? AND member_id = ? AND kind = ?
                   AND role IN ('RELATOR', 'REVISOR')"""
        params: tuple = (session_resource_id, member_id, kind.value)
        if kind == VotingKind.NAO_CONHECIMENTO:
            sql += " AND COALESCE(preliminary_decision_id, '') = ?"
            params += (preliminary_decision_id or "",)
        row = await self._fetchone(sql, params)
        return self._row_to_vote(row) if row else None

    async def count_followers(self, vote_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM votes WHERE follows_vote_id = ?", (vote_id,)
        )
        return row["n"]

    async def attach_votes(self, vote_ids: list[str], voting_id: str) -> None:
        await self._conn.executemany(
            "UPDATE votes SET voting_id = ? WHERE id = ?",
            [(voting_id, vid) for vid in vote_ids],
        )

    async def delete_vote(self, vote_id: str) -> None:
        await self._conn.execute("DELETE FROM votes WHERE id = ?", (vote_id,))

    async def delete_session_judgment(self, session_resource_id: str) -> int:
        """Delete every voting and vote recorded for a session resource."""
        await self._conn.execute(
            "UPDATE votes SET follows_vote_id = NULL WHERE session_resource_id = ?",
            (session_resource_id,),
        )
        await self._conn.execute(
            "DELETE FROM votes WHERE session_resource_id = ?", (session_resource_id,)
        )
        cursor = await self._conn.execute(
            "DELETE FROM votings WHERE session_resource_id = ?", (session_resource_id,)
        )
        return cursor.rowcount

    # ---------------------------------------------------------------
    # Judgment log
    # ---------------------------------------------------------------

    async def log_event(
        self, entity_id: str, event: str, detail: dict | None = None
    ) -> None:
        await self._conn.execute(
            "INSERT INTO judgment_log (entity_id, event, detail, created_at) VALUES (?,?,?,?)",
            (entity_id, event, json.dumps(detail) if detail else None, _now()),
        )

    async def get_logs(self, entity_id: str) -> list[dict]:
        rows = await self._fetchall(
            "SELECT * FROM judgment_log WHERE entity_id = ? ORDER BY id",
            (entity_id,),
        )
        return [
            {
                "event": r["event"],
                "detail": json.loads(r["detail"]) if r["detail"] else None,
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_member(row) -> Member:
        return Member(
            id=row["id"],
            name=row["name"],
            role=row["role"] or "",
            gender=Gender(row["gender"]),
            active=bool(row["active"]),
        )

    @staticmethod
    def _row_to_session(row) -> Session:
        return Session(
            id=row["id"],
            number=row["number"],
            date=row["date"],
            status=SessionStatus(row["status"]),
            president_id=row["president_id"],
            member_ids=json.loads(row["member_ids"]) if row["member_ids"] else [],
            administrative_matters=row["administrative_matters"] or "",
            publication_number=row["publication_number"] or "",
            publication_date=row["publication_date"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session_resource(row) -> SessionResource:
        return SessionResource(
            id=row["id"],
            session_id=row["session_id"],
            resource_id=row["resource_id"],
            position=row["position"],
            status=SessionResourceStatus(row["status"]),
            minutes_text=row["minutes_text"] or "",
            diligence_days=row["diligence_days"],
            view_requested_by=row["view_requested_by"],
            specific_president_id=row["specific_president_id"],
            absent_member_ids=json.loads(row["absent_member_ids"]) if row["absent_member_ids"] else [],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_distribution(row) -> Distribution:
        return Distribution(
            id=row["id"],
            resource_id=row["resource_id"],
            session_id=row["session_id"],
            rapporteur_id=row["rapporteur_id"],
            reviewer_ids=json.loads(row["reviewer_ids"]) if row["reviewer_ids"] else [],
            number=row["number"],
            is_active=bool(row["is_active"]),
            carried_from_session_id=row["carried_from_session_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_voting(row) -> Voting:
        return Voting(
            id=row["id"],
            resource_id=row["resource_id"],
            session_resource_id=row["session_resource_id"],
            session_id=row["session_id"],
            kind=VotingKind(row["kind"]),
            status=VotingStatus(row["status"]),
            preliminary_decision_id=row["preliminary_decision_id"],
            order=row["order"],
            completed_at=row["completed_at"] or "",
            judged_in_session_id=row["judged_in_session_id"],
            winning_vote_id=row["winning_vote_id"],
            winning_member_id=row["winning_member_id"],
            winning_vote_count=row["winning_vote_count"] or 0,
            quality_vote_used=bool(row["quality_vote_used"]),
            quality_vote_member_id=row["quality_vote_member_id"],
            total_votes=row["total_votes"] or 0,
            votes_in_favor=row["votes_in_favor"] or 0,
            votes_against=row["votes_against"] or 0,
            abstentions=row["abstentions"] or 0,
            absences=row["absences"] or 0,
            impediments=row["impediments"] or 0,
            suspicions=row["suspicions"] or 0,
            final_text=row["final_text"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_vote(row) -> Vote:
        return Vote(
            id=row["id"],
            session_id=row["session_id"],
            session_resource_id=row["session_resource_id"],
            member_id=row["member_id"],
            kind=VotingKind(row["kind"]),
            role=VoteRole(row["role"]),
            participation=ParticipationStatus(row["participation"]),
            voting_id=row["voting_id"],
            follows_vote_id=row["follows_vote_id"],
            preliminary_decision_id=row["preliminary_decision_id"],
            preliminary_outcome=(
                PreliminaryOutcome(row["preliminary_outcome"])
                if row["preliminary_outcome"] else None
            ),
            merit_decision_id=row["merit_decision_id"],
            official_decision_id=row["official_decision_id"],
            text=row["text"] or "",
            created_at=row["created_at"],
        )
