"""ccrvote CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import typer

from .errors import CCRError
from .models import (
    Actor,
    Gender,
    Member,
    ParticipationStatus,
    PreliminaryOutcome,
    SessionResourceStatus,
    TallyResult,
    VoteRole,
    VotingKind,
)

app = typer.Typer(
    name="ccrvote",
    help="ccrvote — tribunal judgment and voting tally",
    no_args_is_help=True,
)
member_app = typer.Typer(help="Tribunal members", no_args_is_help=True)
session_app = typer.Typer(help="Session lifecycle", no_args_is_help=True)
conflict_app = typer.Typer(help="Registered impediments", no_args_is_help=True)
app.add_typer(member_app, name="member")
app.add_typer(session_app, name="session")
app.add_typer(conflict_app, name="conflict")

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .ccrvote/config.yaml — team-shared configuration
database:
  path: .ccrvote/state.db
  busy_timeout_sec: 5

logging:
  level: INFO
  format: console

judgment:
  minutes_placeholder: "[DETALHAR]"
  admins: []

# catalog:
#   path: decisions.yaml

notify:
  webhook_url: ""
  events:
    - voting.concluded
    - resource.status_changed
    - session.completed
    - session.reverted
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .ccrvote/local.config.yaml — personal overrides (DO NOT commit)
# logging:
#   level: DEBUG
# notify:
#   webhook_url: https://minutes.example/hooks/ccr
"""

GITIGNORE_ENTRIES = [
    ".ccrvote/local.config.yaml",
    ".ccrvote/state.db",
    ".ccrvote/state.db-wal",
    ".ccrvote/state.db-shm",
]


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


async def _get_db(config):
    from .db import Database
    db_path = config.db_path()
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = Database(db_path, busy_timeout_sec=config.database.busy_timeout_sec)
    await db.init()
    return db


@dataclass
class _Services:
    config: object
    db: object
    notifier: object

    @property
    def catalog(self):
        from .catalog import load_catalog
        return load_catalog(self.config.catalog.path or None)

    @property
    def sessions(self):
        from .sessions import SessionService
        return SessionService(self.db, self.notifier)

    @property
    def agenda(self):
        from .agenda import AgendaService
        return AgendaService(
            self.db, notifier=self.notifier,
            minutes_placeholder=self.config.judgment.minutes_placeholder,
        )

    @property
    def votings(self):
        from .voting import VotingService
        return VotingService(self.db, notifier=self.notifier)

    @property
    def ledger(self):
        from .ledger import VoteLedger
        return VoteLedger(self.db, catalog=self.catalog)

    @property
    def distributions(self):
        from .distribution import DistributionLedger
        return DistributionLedger(self.db)

    def actor(self, user: str) -> Actor:
        return Actor(user=user, is_admin=self.config.is_admin(user))


def _call(fn):
    """Run ``fn(services)`` against the project database.

    Domain errors are reported as ``error: <Class>: <message>`` and exit 1.
    """
    from .config import load_config
    from .notifier import Notifier

    async def _main():
        config = load_config(_get_project_root())
        db = await _get_db(config)
        notifier = Notifier(config.notify.webhook_url, config.notify.events)
        try:
            return await fn(_Services(config, db, notifier))
        finally:
            await notifier.close()
            await db.close()

    try:
        return _run_async(_main())
    except CCRError as exc:
        typer.echo(f"error: {type(exc).__name__}: {exc.message}", err=True)
        raise typer.Exit(1)


def _echo_tally(result: TallyResult) -> None:
    for key, count in result.clusters.items():
        typer.echo(f"  cluster {key}: {count}")
    typer.echo(f"  tie: {'yes' if result.tie else 'no'}"
               f" · quality vote required: {'yes' if result.quality_vote_required else 'no'}"
               f" · cast: {'yes' if result.quality_vote_cast else 'no'}")
    if result.pending_member_ids:
        typer.echo(f"  pending: {', '.join(result.pending_member_ids)}")
    if result.winner:
        typer.echo(f"  winner: {result.winner.member_id} ({result.winner.vote_count} votes)")
    elif result.blocker:
        typer.echo(f"  no winner: {result.blocker.value}")


UserOption = typer.Option("", "--user", envvar="CCRVOTE_USER", help="Acting user")


@app.callback()
def main():
    """Configure logging from the project config."""
    from .config import load_config
    from .logging import configure_logging

    try:
        config = load_config(_get_project_root())
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)
    configure_logging(config.logging.level, config.logging.format)


# -------------------------------------------------------------------
# Project
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize ccrvote in the current directory."""
    root = _get_project_root()

    cfg_dir = root / ".ccrvote"
    cfg_dir.mkdir(exist_ok=True)

    config_path = cfg_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = cfg_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = gitignore_path.read_text() if gitignore_path.exists() else ""
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# ccrvote\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    async def _open(svc: _Services):
        return len(svc.catalog)

    count = _call(_open)
    typer.echo(f"  Database ready · {count} decisions loaded")


@app.command("config")
def config_show():
    """Show merged configuration."""
    from dataclasses import asdict

    import yaml

    from .config import load_config

    config = load_config(_get_project_root())
    data = asdict(config)
    if data["notify"]["webhook_url"]:
        data["notify"]["webhook_url"] = data["notify"]["webhook_url"][:16] + "..."

    typer.echo("\n  ccrvote — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


# -------------------------------------------------------------------
# Members & conflicts
# -------------------------------------------------------------------

@member_app.command("add")
def member_add(
    member_id: str = typer.Argument(..., help="Member ID"),
    name: str = typer.Argument(..., help="Full name"),
    role: str = typer.Option("", "--role", help="Seat, e.g. Vice-Presidente"),
    gender: Gender = typer.Option(Gender.MASCULINO, "--gender"),
):
    """Register or update a member."""
    async def _add(svc: _Services):
        async with svc.db.transaction() as db:
            await db.upsert_member(Member(id=member_id, name=name, role=role, gender=gender))

    _call(_add)
    typer.echo(f"  Member {member_id} saved.")


@member_app.command("list")
def member_list():
    """List members in voting-roll order."""
    from .tally import order_members

    async def _list(svc: _Services):
        async with svc.db.transaction() as db:
            return await db.list_members()

    members = order_members(_call(_list))
    if not members:
        typer.echo("  No members.")
        return
    for m in members:
        typer.echo(f"  {m.id:<12} {m.name:<30} {m.role}")


@conflict_app.command("add")
def conflict_add(
    resource_id: str = typer.Argument(..., help="Resource ID"),
    member_id: str = typer.Argument(..., help="Impeded member ID"),
    reason: str = typer.Option("", "--reason"),
):
    """Register a member as impeded for a resource."""
    async def _add(svc: _Services):
        from .lookups import require_member
        async with svc.db.transaction() as db:
            await require_member(db, member_id)
            await db.add_impediment(resource_id, member_id, reason)

    _call(_add)
    typer.echo(f"  {member_id} impeded for {resource_id}.")


# -------------------------------------------------------------------
# Sessions
# -------------------------------------------------------------------

@session_app.command("create")
def session_create(
    number: str = typer.Argument(..., help="Session number"),
    date: str = typer.Argument(..., help="Session date (YYYY-MM-DD)"),
    members: list[str] = typer.Option([], "--member", "-m", help="Participating member"),
    president: str = typer.Option(None, "--president", help="Presiding member"),
    session_id: str = typer.Option(None, "--id", help="Explicit session ID"),
):
    """Create a session in PUBLICACAO."""
    session = _call(lambda svc: svc.sessions.create(
        number, date, members, president_id=president, session_id=session_id,
    ))
    typer.echo(f"  Session {session.id} created ({session.status.value}).")


@session_app.command("publish")
def session_publish(
    session_id: str = typer.Argument(...),
    publication_number: str = typer.Argument(...),
    publication_date: str = typer.Argument(...),
):
    """Publish the agenda: PUBLICACAO → PENDENTE."""
    session = _call(lambda svc: svc.sessions.publish(
        session_id, publication_number, publication_date,
    ))
    typer.echo(f"  Session {session.id} → {session.status.value}")


@session_app.command("complete")
def session_complete(session_id: str = typer.Argument(...)):
    """Conclude a session whose agenda is fully decided."""
    session = _call(lambda svc: svc.sessions.complete(session_id))
    typer.echo(f"  Session {session.id} → {session.status.value}")


@session_app.command("cancel")
def session_cancel(session_id: str = typer.Argument(...)):
    """Cancel a session."""
    session = _call(lambda svc: svc.sessions.cancel(session_id))
    typer.echo(f"  Session {session.id} → {session.status.value}")


@session_app.command("revert")
def session_revert(session_id: str = typer.Argument(...), user: str = UserOption):
    """Reopen a concluded session (administrators only)."""
    session = _call(lambda svc: svc.sessions.revert(session_id, svc.actor(user)))
    typer.echo(f"  Session {session.id} → {session.status.value}")


@session_app.command("matters")
def session_matters(
    session_id: str = typer.Argument(...),
    text: str = typer.Argument(..., help="Administrative matters"),
):
    """Record the session's administrative matters."""
    _call(lambda svc: svc.sessions.set_administrative_matters(session_id, text))
    typer.echo(f"  Administrative matters saved for {session_id}.")


# -------------------------------------------------------------------
# Agenda & distribution
# -------------------------------------------------------------------

@app.command()
def schedule(
    session_id: str = typer.Argument(...),
    resource_id: str = typer.Argument(...),
):
    """Put a resource on a session's agenda."""
    sr = _call(lambda svc: svc.agenda.schedule(session_id, resource_id))
    typer.echo(f"  {resource_id} scheduled as {sr.id} (position {sr.position}).")


@app.command()
def distribute(
    resource_id: str = typer.Argument(...),
    session_id: str = typer.Argument(...),
    rapporteur: str = typer.Argument(..., help="Rapporteur member ID"),
    reviewers: list[str] = typer.Option([], "--reviewer", "-r"),
):
    """Assign rapporteur and reviewers to a resource."""
    dist = _call(lambda svc: svc.distributions.assign(
        resource_id, session_id, rapporteur, reviewers,
    ))
    typer.echo(f"  Distribution #{dist.number} of {resource_id}: rapporteur {dist.rapporteur_id}")


@app.command("carry-forward")
def carry_forward(
    from_session: str = typer.Argument(...),
    to_session: str = typer.Argument(...),
    resource_id: str = typer.Option(None, "--resource", help="Carry a single resource"),
):
    """Carry distributions from one session into another."""
    if resource_id:
        dist = _call(lambda svc: svc.distributions.carry_forward(
            resource_id, from_session, to_session,
        ))
        if dist is None:
            typer.echo(f"  {resource_id} already distributed in {to_session} — skipped.")
        else:
            typer.echo(f"  {resource_id} carried as distribution #{dist.number}.")
        return

    report = _call(lambda svc: svc.distributions.carry_forward_agenda(from_session, to_session))
    typer.echo(f"  Created: {len(report.created)}")
    typer.echo(f"  Skipped (already distributed): {len(report.skipped)}")
    typer.echo(f"  Missing (no distribution): {len(report.missing)}")


@app.command()
def absences(
    session_resource_id: str = typer.Argument(...),
    member_ids: list[str] = typer.Argument(None, help="Absent members (none clears)"),
):
    """Register members absent for one resource."""
    sr = _call(lambda svc: svc.agenda.set_absences(session_resource_id, member_ids or []))
    absent = ", ".join(sr.absent_member_ids) or "—"
    typer.echo(f"  Absent for {sr.resource_id}: {absent}")


# -------------------------------------------------------------------
# Votes & votings
# -------------------------------------------------------------------

@app.command()
def position(
    session_resource_id: str = typer.Argument(...),
    member_id: str = typer.Argument(...),
    text: str = typer.Option(..., "--text", help="Vote text"),
    role: VoteRole = typer.Option(VoteRole.RELATOR, "--role"),
    kind: VotingKind = typer.Option(VotingKind.MERITO, "--kind"),
    merit: str = typer.Option(None, "--merit", help="Merit decision ID"),
    preliminary: str = typer.Option(None, "--preliminary", help="Preliminary decision ID"),
    outcome: PreliminaryOutcome = typer.Option(None, "--outcome"),
    official: str = typer.Option(None, "--official", help="Official decision ID"),
):
    """Record a rapporteur/reviewer position."""
    vote = _call(lambda svc: svc.ledger.record_position(
        session_resource_id, member_id, role, kind,
        text=text,
        preliminary_decision_id=preliminary,
        preliminary_outcome=outcome,
        merit_decision_id=merit,
        official_decision_id=official,
    ))
    typer.echo(f"  Position {vote.id} recorded in voting {vote.voting_id}.")


@app.command()
def vote(
    voting_id: str = typer.Argument(...),
    member_id: str = typer.Argument(...),
    follows: str = typer.Option(None, "--follows", help="Vote ID to follow"),
    participation: ParticipationStatus = typer.Option(
        ParticipationStatus.PRESENTE, "--participation",
    ),
):
    """Cast or replace a member's vote."""
    cast, result = _call(lambda svc: svc.ledger.cast_vote(
        voting_id, member_id, follows_vote_id=follows, participation=participation,
    ))
    typer.echo(f"  Vote {cast.id} ({cast.role.value}, {cast.participation.value}) saved.")
    _echo_tally(result)


@app.command()
def group(session_resource_id: str = typer.Argument(...)):
    """Group loose votes into votings."""
    votings = _call(lambda svc: svc.votings.group_pending_votes(session_resource_id))
    if not votings:
        typer.echo("  No votings.")
        return
    for v in votings:
        typer.echo(f"  {v.order:>2}. {v.id}  {v.label:<40} {v.status.value}")


@app.command()
def tally(voting_id: str = typer.Argument(...)):
    """Show the current tally of a voting."""
    result = _call(lambda svc: svc.votings.tally(voting_id))
    typer.echo(f"\n  Tally — {voting_id}")
    _echo_tally(result)


@app.command()
def conclude(
    voting_id: str = typer.Argument(...),
    final_text: str = typer.Option("", "--final-text"),
):
    """Conclude a voting with its winning position."""
    async def _conclude(svc: _Services):
        from .tally import describe_result
        voting, result = await svc.votings.conclude(voting_id, final_text)
        async with svc.db.transaction() as db:
            winner = await db.get_member(voting.winning_member_id)
        return voting, result, describe_result(result.winner, winner) if winner else ""

    voting, _, summary = _call(_conclude)
    typer.echo(f"  Voting {voting.id} → {voting.status.value}")
    if summary:
        typer.echo(f"  {summary}")


@app.command()
def unanimous(
    voting_id: str = typer.Argument(...),
    final_text: str = typer.Option("", "--final-text"),
):
    """Conclude a single-position voting unanimously."""
    voting, _ = _call(lambda svc: svc.votings.declare_unanimous(voting_id, final_text))
    typer.echo(f"  Voting {voting.id} → {voting.status.value} (unanimous, "
               f"{voting.winning_vote_count} votes)")


@app.command()
def reopen(
    voting_id: str = typer.Argument(...),
    recompute: bool = typer.Option(False, "--recompute", help="Re-run the tally instead"),
    user: str = UserOption,
):
    """Reopen or recompute a concluded voting (administrators only)."""
    if recompute:
        voting, _ = _call(lambda svc: svc.votings.recompute(voting_id, svc.actor(user)))
        typer.echo(f"  Voting {voting.id} recomputed: winner {voting.winning_member_id}")
        return
    voting = _call(lambda svc: svc.votings.reopen(voting_id, svc.actor(user)))
    typer.echo(f"  Voting {voting.id} → {voting.status.value}")


# -------------------------------------------------------------------
# Resource status
# -------------------------------------------------------------------

@app.command("resource-status")
def resource_status(
    session_resource_id: str = typer.Argument(...),
    status: SessionResourceStatus = typer.Argument(...),
    minutes: str = typer.Option(..., "--minutes", help="Minutes text"),
    days: int = typer.Option(None, "--days", help="Diligence days"),
    requested_by: str = typer.Option(None, "--requested-by", help="Member requesting view"),
):
    """Record the outcome of a resource in the session."""
    sr = _call(lambda svc: svc.agenda.set_status(
        session_resource_id, status,
        minutes_text=minutes, diligence_days=days, view_requested_by=requested_by,
    ))
    typer.echo(f"  {sr.resource_id} → {sr.status.value}")


@app.command("remove-result")
def remove_result(session_resource_id: str = typer.Argument(...), user: str = UserOption):
    """Put a decided resource back on the agenda, discarding its votings."""
    sr = _call(lambda svc: svc.agenda.remove_result(session_resource_id, svc.actor(user)))
    typer.echo(f"  {sr.resource_id} → {sr.status.value}")


@app.command("revert-judgment")
def revert_judgment(session_resource_id: str = typer.Argument(...), user: str = UserOption):
    """Revert a JULGADO resource keeping its votings (administrators only)."""
    sr = _call(lambda svc: svc.agenda.revert_judgment(session_resource_id, svc.actor(user)))
    typer.echo(f"  {sr.resource_id} → {sr.status.value}")


@app.command()
def logs(entity_id: str = typer.Argument(..., help="Voting, session or resource entry ID")):
    """Show the judgment log of an entity."""
    import json

    async def _logs(svc: _Services):
        async with svc.db.transaction() as db:
            return await db.get_logs(entity_id)

    entries = _call(_logs)
    if not entries:
        typer.echo(f"  No logs for '{entity_id}'.")
        return
    typer.echo(f"\n  Logs — {entity_id}")
    typer.echo("  " + "─" * 50)
    for entry in entries:
        typer.echo(f"  [{entry['created_at']}] {entry['event']}")
        if entry.get("detail"):
            typer.echo(f"    {json.dumps(entry['detail'], ensure_ascii=False)}")


if __name__ == "__main__":
    app()
