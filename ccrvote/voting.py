"""Voting state machine: grouping, conclusion and admin correction."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from .db import Database, new_id
from .directory import DatabaseDirectory, ImpedimentSource
from .distribution import drop_session_reviewers
from .errors import (
    ConcludedConcurrentlyError,
    ConflictError,
    NoWinnerError,
    StateError,
    ValidationError,
)
from .lookups import (
    require_admin,
    require_judging_session,
    require_session,
    require_session_resource,
    require_voting,
)
from .models import (
    Actor,
    Distribution,
    ParticipationStatus,
    SessionResource,
    SessionResourceStatus,
    TallyResult,
    Vote,
    VoteRole,
    Voting,
    VotingKind,
    VotingStatus,
)
from .notifier import Notifier
from .tally import order_members, tally_votes

log = structlog.get_logger(__name__)


@dataclass
class JudgmentContext:
    """Everything the tally needs besides the votes themselves."""

    roster: list[str] = field(default_factory=list)
    president_id: str | None = None
    impeded: set[str] = field(default_factory=set)
    absent: set[str] = field(default_factory=set)
    distribution: Distribution | None = None


async def load_context(
    db: Database, directory: ImpedimentSource, sr: SessionResource
) -> JudgmentContext:
    session = await require_session(db, sr.session_id)
    members = await db.list_members(session.member_ids)
    return JudgmentContext(
        roster=[m.id for m in order_members(members)],
        president_id=sr.specific_president_id or session.president_id,
        impeded=await directory.impeded_members(sr.resource_id),
        absent=set(sr.absent_member_ids),
        distribution=await db.active_distribution(sr.resource_id),
    )


def tally_with(votes: list[Vote], ctx: JudgmentContext) -> TallyResult:
    return tally_votes(
        votes,
        roster=ctx.roster,
        president_id=ctx.president_id,
        impeded=ctx.impeded,
        absent=ctx.absent,
        distribution=ctx.distribution,
    )


async def compute_tally(
    db: Database, directory: ImpedimentSource, voting: Voting
) -> TallyResult:
    """Tally a voting from the votes currently persisted."""
    sr = await require_session_resource(db, voting.session_resource_id)
    ctx = await load_context(db, directory, sr)
    return tally_with(await db.list_votes(voting.id), ctx)


def _question_rank(key: tuple[VotingKind, str | None]) -> int:
    kind, preliminary = key
    if kind == VotingKind.MERITO:
        return 2
    return 0 if preliminary else 1


async def group_pending(db: Database, sr: SessionResource) -> list[Voting]:
    """Attach loose votes of a session resource to their votings.

    Each distinct question (merits, or non-admission per preliminary
    decision) gets one open voting, created on demand. Returns the votings
    created.
    """
    groups: dict[tuple[VotingKind, str | None], list[Vote]] = {}
    for vote in await db.list_unattached_votes(sr.id):
        preliminary = (
            vote.preliminary_decision_id
            if vote.kind == VotingKind.NAO_CONHECIMENTO else None
        )
        groups.setdefault((vote.kind, preliminary), []).append(vote)

    created: list[Voting] = []
    order = await db.max_voting_order(sr.resource_id)
    for key in sorted(groups, key=_question_rank):
        kind, preliminary = key
        voting = await db.find_open_voting(sr.id, kind, preliminary)
        if voting is None:
            order += 1
            voting = Voting(
                id=new_id(),
                resource_id=sr.resource_id,
                session_resource_id=sr.id,
                session_id=sr.session_id,
                kind=kind,
                preliminary_decision_id=preliminary,
                order=order,
            )
            await db.insert_voting(voting)
            created.append(voting)
        for vote in groups[key]:
            if await db.find_member_vote(voting.id, vote.member_id) is not None:
                raise ConflictError(
                    f"member {vote.member_id} already has a vote in voting {voting.id}",
                    entity=vote.id,
                )
        await db.attach_votes([v.id for v in groups[key]], voting.id)
    return created


def _outcome_changes(result: TallyResult, session_id: str, final_text: str) -> dict:
    winner = result.winner
    return {
        "judged_in_session_id": session_id,
        "winning_vote_id": winner.cluster_key,
        "winning_member_id": winner.member_id,
        "winning_vote_count": winner.vote_count,
        "quality_vote_used": result.quality_vote_cast,
        "quality_vote_member_id": result.president_id if result.quality_vote_cast else None,
        "total_votes": result.total_votes,
        "votes_in_favor": winner.vote_count,
        "votes_against": result.votes_against,
        "abstentions": result.abstentions,
        "absences": result.absences,
        "impediments": result.impediments,
        "suspicions": result.suspicions,
        "final_text": final_text,
    }


_CLEARED_OUTCOME = {
    "completed_at": "",
    "judged_in_session_id": None,
    "winning_vote_id": None,
    "winning_member_id": None,
    "winning_vote_count": 0,
    "quality_vote_used": False,
    "quality_vote_member_id": None,
    "total_votes": 0,
    "votes_in_favor": 0,
    "votes_against": 0,
    "abstentions": 0,
    "absences": 0,
    "impediments": 0,
    "suspicions": 0,
}


class VotingService:
    """Lifecycle of the votings of a session resource."""

    def __init__(
        self,
        db: Database,
        directory: ImpedimentSource | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.directory = directory or DatabaseDirectory(db)
        self.notifier = notifier

    async def tally(self, voting_id: str) -> TallyResult:
        async with self.db.transaction() as db:
            voting = await require_voting(db, voting_id)
            return await compute_tally(db, self.directory, voting)

    async def list_votings(self, session_resource_id: str) -> list[Voting]:
        async with self.db.transaction() as db:
            await require_session_resource(db, session_resource_id)
            return await db.list_votings(session_resource_id)

    async def group_pending_votes(self, session_resource_id: str) -> list[Voting]:
        """Group loose votes into votings; returns every voting of the resource.

        Safe to repeat: a second call finds nothing to attach and returns
        the same votings.
        """
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            await require_judging_session(db, sr.session_id)
            created = await group_pending(db, sr)
            votings = await db.list_votings(sr.id)
        if created:
            log.info(
                "voting.grouped",
                session_resource_id=sr.id,
                created=[v.id for v in created],
            )
        return votings

    async def conclude(self, voting_id: str, final_text: str = "") -> tuple[Voting, TallyResult]:
        async with self.db.transaction() as db:
            voting = await self._require_open(db, voting_id)
            result = await compute_tally(db, self.directory, voting)
            if result.winner is None:
                raise NoWinnerError(
                    result.blocker, entity=voting_id,
                    pending_member_ids=result.pending_member_ids,
                )
            changes = _outcome_changes(result, voting.session_id, final_text)
            await db.update_voting(
                voting_id,
                status=VotingStatus.CONCLUIDA,
                completed_at=datetime.now(timezone.utc).isoformat(),
                **changes,
            )
            await db.log_event(voting_id, "concluded", {
                "winner": result.winner.member_id,
                "votes": result.winner.vote_count,
                "quality_vote": result.quality_vote_cast,
            })
            voting = await db.get_voting(voting_id)

        log.info(
            "voting.concluded",
            voting_id=voting_id,
            winner=voting.winning_member_id,
            votes=voting.winning_vote_count,
            quality_vote=voting.quality_vote_used,
        )
        await self._notify_concluded(voting)
        return voting, result

    async def declare_unanimous(
        self, voting_id: str, final_text: str = ""
    ) -> tuple[Voting, TallyResult]:
        """Conclude a single-anchor voting with every available member following it."""
        async with self.db.transaction() as db:
            voting = await self._require_open(db, voting_id)
            votes = await db.list_votes(voting_id)
            anchors = [v for v in votes if v.is_anchor]
            if len(votes) != 1 or len(anchors) != 1:
                raise StateError(
                    "a unanimous declaration requires exactly one recorded position",
                    entity=voting_id,
                )
            anchor = anchors[0]
            sr = await require_session_resource(db, voting.session_resource_id)
            ctx = await load_context(db, self.directory, sr)
            for member_id in tally_with(votes, ctx).available_member_ids:
                await db.insert_vote(Vote(
                    id=new_id(),
                    session_id=voting.session_id,
                    session_resource_id=voting.session_resource_id,
                    member_id=member_id,
                    kind=voting.kind,
                    role=VoteRole.VOTANTE,
                    participation=ParticipationStatus.PRESENTE,
                    voting_id=voting_id,
                    follows_vote_id=anchor.id,
                    preliminary_decision_id=anchor.preliminary_decision_id,
                    preliminary_outcome=anchor.preliminary_outcome,
                    merit_decision_id=anchor.merit_decision_id,
                    official_decision_id=anchor.official_decision_id,
                ))
            result = tally_with(await db.list_votes(voting_id), ctx)
            if result.winner is None:
                raise NoWinnerError(
                    result.blocker, entity=voting_id,
                    pending_member_ids=result.pending_member_ids,
                )
            await db.update_voting(
                voting_id,
                status=VotingStatus.CONCLUIDA,
                completed_at=datetime.now(timezone.utc).isoformat(),
                **_outcome_changes(result, voting.session_id, final_text),
            )
            await db.log_event(voting_id, "concluded_unanimous", {
                "winner": result.winner.member_id,
                "votes": result.winner.vote_count,
            })
            voting = await db.get_voting(voting_id)

        log.info("voting.concluded", voting_id=voting_id, unanimous=True,
                 winner=voting.winning_member_id, votes=voting.winning_vote_count)
        await self._notify_concluded(voting)
        return voting, result

    async def reopen(self, voting_id: str, actor: Actor) -> Voting:
        require_admin(actor, "reopen a concluded voting")
        async with self.db.transaction() as db:
            voting = await self._require_concluded(db, voting_id)
            if await db.find_open_voting(
                voting.session_resource_id, voting.kind, voting.preliminary_decision_id
            ) is not None:
                raise ConflictError(
                    f"an open voting for {voting.label} already exists", entity=voting_id,
                )
            await db.update_voting(voting_id, status=VotingStatus.PENDENTE, **_CLEARED_OUTCOME)
            await db.log_event(voting_id, "reopened", {"by": actor.user})
            voting = await db.get_voting(voting_id)
        log.info("voting.reopened", voting_id=voting_id, user=actor.user)
        return voting

    async def recompute(self, voting_id: str, actor: Actor) -> tuple[Voting, TallyResult]:
        """Re-run the tally on a concluded voting and overwrite its winner."""
        require_admin(actor, "recompute a concluded voting")
        async with self.db.transaction() as db:
            voting = await self._require_concluded(db, voting_id)
            result = await compute_tally(db, self.directory, voting)
            if result.winner is None:
                raise NoWinnerError(
                    result.blocker, entity=voting_id,
                    pending_member_ids=result.pending_member_ids,
                )
            previous = voting.winning_member_id
            await db.update_voting(
                voting_id,
                **_outcome_changes(
                    result, voting.judged_in_session_id or voting.session_id,
                    voting.final_text,
                ),
            )
            await db.log_event(voting_id, "recomputed", {
                "by": actor.user,
                "previous_winner": previous,
                "winner": result.winner.member_id,
            })
            voting = await db.get_voting(voting_id)
        log.info("voting.recomputed", voting_id=voting_id, user=actor.user,
                 previous_winner=previous, winner=voting.winning_member_id)
        return voting, result

    async def delete_voting(self, voting_id: str) -> None:
        """Delete a pending voting with its votes.

        Reviewers added to the distribution by a position recorded for this
        session resource are dropped from it again, unless they still hold
        a REVISOR position in another voting of the resource.
        """
        async with self.db.transaction() as db:
            voting = await require_voting(db, voting_id)
            if voting.status != VotingStatus.PENDENTE:
                raise StateError("only pending votings can be deleted", entity=voting_id)
            await require_judging_session(db, voting.session_id)
            reviewers = [
                v.member_id for v in await db.list_votes(voting_id)
                if v.role == VoteRole.REVISOR
            ]
            await db.delete_voting(voting_id)
            await drop_session_reviewers(
                db, voting.resource_id, voting.session_resource_id, reviewers,
            )
            await db.log_event(voting.session_resource_id, "voting_deleted", {"voting": voting_id})
        log.info("voting.deleted", voting_id=voting_id)

    async def reorder(self, session_resource_id: str, voting_ids: list[str]) -> list[Voting]:
        async with self.db.transaction() as db:
            sr = await require_session_resource(db, session_resource_id)
            await require_judging_session(db, sr.session_id)
            current = {v.id for v in await db.list_votings(sr.id)}
            if len(voting_ids) != len(set(voting_ids)) or set(voting_ids) != current:
                raise ValidationError(
                    "the new order must list every voting of the session resource exactly once",
                    entity=session_resource_id,
                )
            for position, vid in enumerate(voting_ids, start=1):
                await db.update_voting(vid, order=position)
            return await db.list_votings(sr.id)

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    async def _require_open(self, db: Database, voting_id: str) -> Voting:
        voting = await require_voting(db, voting_id)
        if voting.status == VotingStatus.CONCLUIDA:
            raise ConcludedConcurrentlyError(
                f"voting {voting_id} has already been concluded", entity=voting_id,
            )
        await require_judging_session(db, voting.session_id)
        sr = await require_session_resource(db, voting.session_resource_id)
        if sr.status != SessionResourceStatus.EM_PAUTA:
            raise StateError(
                f"resource {sr.resource_id} is already {sr.status.value}", entity=sr.id,
            )
        return voting

    async def _require_concluded(self, db: Database, voting_id: str) -> Voting:
        voting = await require_voting(db, voting_id)
        if voting.status != VotingStatus.CONCLUIDA:
            raise StateError(f"voting {voting_id} is not concluded", entity=voting_id)
        sr = await require_session_resource(db, voting.session_resource_id)
        if sr.status == SessionResourceStatus.JULGADO:
            raise StateError(
                "revert the judgment of the resource before correcting its votings",
                entity=sr.id,
            )
        return voting

    async def _notify_concluded(self, voting: Voting) -> None:
        if self.notifier is None:
            return
        await self.notifier.notify("voting.concluded", {
            "voting_id": voting.id,
            "resource_id": voting.resource_id,
            "session_id": voting.session_id,
            "kind": voting.kind.value,
            "label": voting.label,
            "winning_member_id": voting.winning_member_id,
            "winning_vote_count": voting.winning_vote_count,
            "quality_vote_used": voting.quality_vote_used,
            "final_text": voting.final_text,
        })
