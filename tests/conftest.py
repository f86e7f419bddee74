"""Shared fixtures for ccrvote tests."""

from dataclasses import dataclass

import pytest
import pytest_asyncio
import structlog

from ccrvote.agenda import AgendaService
from ccrvote.db import Database
from ccrvote.distribution import DistributionLedger
from ccrvote.ledger import VoteLedger
from ccrvote.models import Gender, Member, VoteRole, VotingKind
from ccrvote.sessions import SessionService
from ccrvote.voting import VotingService

MEMBERS = [
    Member("rel", "Ana Souza", role="Conselheira", gender=Gender.FEMININO),
    Member("rev", "Bruno Lima", role="Conselheiro"),
    Member("m1", "Carla Dias", role="Representante do Município", gender=Gender.FEMININO),
    Member("m2", "Davi Rocha", role="Conselheiro"),
    Member("m3", "Élida Prado", role="Vice-Presidente", gender=Gender.FEMININO),
    Member("pres", "Gustavo Reis", role="Presidente"),
]

SESSION_MEMBERS = ["rel", "rev", "m1", "m2", "m3"]


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project with a shared .ccrvote/config.yaml."""
    cfg_dir = tmp_path / ".ccrvote"
    cfg_dir.mkdir()
    (cfg_dir / "config.yaml").write_text("""\
database:
  path: .ccrvote/state.db
logging:
  level: WARNING
judgment:
  admins:
    - admin
notify:
  webhook_url: ""
  events:
    - voting.concluded
""")
    return tmp_path


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


@dataclass
class World:
    db: Database
    session_id: str
    resource_id: str
    sr_id: str
    sessions: SessionService
    agenda: AgendaService
    votings: VotingService
    ledger: VoteLedger
    distributions: DistributionLedger


async def build_world(db: Database, members=SESSION_MEMBERS) -> World:
    """Published session S1 with RES-1 on the agenda, distributed to rel (+ rev)."""
    async with db.transaction():
        for m in MEMBERS:
            await db.upsert_member(m)
    sessions = SessionService(db)
    agenda = AgendaService(db)
    distributions = DistributionLedger(db)
    await sessions.create("1/2026", "2026-03-10", list(members),
                          president_id="pres", session_id="S1")
    await sessions.publish("S1", "DOE 42", "2026-03-01")
    sr = await agenda.schedule("S1", "RES-1")
    await distributions.assign("RES-1", "S1", "rel", ["rev"])
    return World(
        db=db,
        session_id="S1",
        resource_id="RES-1",
        sr_id=sr.id,
        sessions=sessions,
        agenda=agenda,
        votings=VotingService(db),
        ledger=VoteLedger(db),
        distributions=distributions,
    )


@pytest_asyncio.fixture
async def world(memory_db):
    return await build_world(memory_db)


async def merit_positions(world: World):
    """rel proposes Provimento, rev Não Provimento; returns (voting_id, rel_vote, rev_vote)."""
    rel = await world.ledger.record_position(
        world.sr_id, "rel", VoteRole.RELATOR, VotingKind.MERITO,
        text="Voto pelo provimento.", merit_decision_id="MER-PROVIMENTO",
    )
    rev = await world.ledger.record_position(
        world.sr_id, "rev", VoteRole.REVISOR, VotingKind.MERITO,
        text="Voto pelo não provimento.", merit_decision_id="MER-NAO-PROVIMENTO",
    )
    return rel.voting_id, rel, rev
