"""Vote ledger: positions, follower votes and the quality vote."""

from __future__ import annotations

import structlog

from .catalog import DecisionCatalog
from .db import Database, new_id
from .directory import DatabaseDirectory, ImpedimentSource
from .distribution import add_reviewer
from .errors import ConflictError, NotFoundError, StateError, ValidationError
from .lookups import require_judging_session, require_session_resource, require_voting
from .models import (
    ANCHOR_ROLES,
    DecisionType,
    NoWinnerReason,
    ParticipationStatus,
    PreliminaryOutcome,
    SessionResource,
    SessionResourceStatus,
    TallyResult,
    Vote,
    VoteRole,
    Voting,
    VotingKind,
    VotingStatus,
)
from .voting import JudgmentContext, group_pending, load_context, tally_with

log = structlog.get_logger(__name__)


def _check_decision(
    catalog: DecisionCatalog, decision_id: str, expected: DecisionType
) -> None:
    decision = catalog.get(decision_id)
    if decision is None:
        raise ValidationError(f"unknown decision {decision_id}", entity=decision_id)
    if decision.type != expected:
        raise ValidationError(
            f"decision {decision_id} is {decision.type.value}, expected {expected.value}",
            entity=decision_id,
        )


def validate_references(
    catalog: DecisionCatalog,
    kind: VotingKind,
    preliminary_decision_id: str | None,
    preliminary_outcome: PreliminaryOutcome | None,
    merit_decision_id: str | None,
    official_decision_id: str | None,
) -> PreliminaryOutcome | None:
    """Check the decision references of a position; returns the effective outcome."""
    if kind == VotingKind.MERITO:
        if not merit_decision_id:
            raise ValidationError("a merits position requires a merit decision")
        if preliminary_decision_id or preliminary_outcome or official_decision_id:
            raise ValidationError("a merits position carries only a merit decision")
        _check_decision(catalog, merit_decision_id, DecisionType.MERITO)
        return None

    if merit_decision_id:
        raise ValidationError("a non-admission position cannot carry a merit decision")
    if not preliminary_decision_id and not official_decision_id:
        raise ValidationError(
            "a non-admission position requires a preliminary or an official decision"
        )
    if preliminary_decision_id:
        _check_decision(catalog, preliminary_decision_id, DecisionType.PRELIMINAR)
        preliminary_outcome = preliminary_outcome or PreliminaryOutcome.ACATAR
    elif preliminary_outcome == PreliminaryOutcome.AFASTAR:
        raise ValidationError("rejecting requires a preliminary decision")
    if official_decision_id:
        if preliminary_outcome == PreliminaryOutcome.AFASTAR:
            raise ValidationError(
                "an official decision is only allowed when the preliminary is accepted",
                entity=official_decision_id,
            )
        _check_decision(catalog, official_decision_id, DecisionType.OFICIO)
    return preliminary_outcome


def _follow_target(votes: list[Vote], follows_vote_id: str, member_id: str) -> Vote:
    """Resolve the anchor a new vote should point at.

    Following a VOTANTE vote is stored as following that vote's anchor, so
    the follow graph never holds more than one hop.
    """
    by_id = {v.id: v for v in votes}
    target = by_id.get(follows_vote_id)
    if target is None:
        raise ValidationError(
            f"vote {follows_vote_id} does not belong to this voting", entity=follows_vote_id,
        )
    if target.role == VoteRole.PRESIDENTE or target.participation != ParticipationStatus.PRESENTE:
        raise ValidationError(
            f"vote {follows_vote_id} cannot be followed", entity=follows_vote_id,
        )
    if not target.is_anchor:
        target = by_id.get(target.follows_vote_id or "")
        if target is None or not target.is_anchor:
            raise ValidationError(
                f"vote {follows_vote_id} does not lead to a recorded position",
                entity=follows_vote_id,
            )
    if target.member_id == member_id:
        raise ValidationError("a member cannot follow their own position", entity=member_id)
    return target


class VoteLedger:
    """Write side of member votes; every write recomputes the tally."""

    def __init__(
        self,
        db: Database,
        directory: ImpedimentSource | None = None,
        catalog: DecisionCatalog | None = None,
    ):
        self.db = db
        self.directory = directory or DatabaseDirectory(db)
        self.catalog = catalog or DecisionCatalog()

    async def record_position(
        self,
        session_resource_id: str,
        member_id: str,
        role: VoteRole,
        kind: VotingKind,
        *,
        text: str,
        preliminary_decision_id: str | None = None,
        preliminary_outcome: PreliminaryOutcome | None = None,
        merit_decision_id: str | None = None,
        official_decision_id: str | None = None,
    ) -> Vote:
        """Record a RELATOR/REVISOR position and group it into its voting."""
        if role not in ANCHOR_ROLES:
            raise ValidationError(f"{role.value} is not a position role", entity=member_id)
        if not text or not text.strip():
            raise ValidationError("a position requires its vote text", entity=member_id)
        preliminary_outcome = validate_references(
            self.catalog, kind, preliminary_decision_id, preliminary_outcome,
            merit_decision_id, official_decision_id,
        )
        question = preliminary_decision_id if kind == VotingKind.NAO_CONHECIMENTO else None

        async with self.db.transaction() as db:
            sr = await self._judgeable(db, session_resource_id)
            ctx = await load_context(db, self.directory, sr)
            self._check_member(ctx, member_id)
            dist = ctx.distribution
            if dist is not None:
                if role == VoteRole.RELATOR and member_id != dist.rapporteur_id:
                    raise ValidationError(
                        f"member {member_id} is not the rapporteur of {sr.resource_id}",
                        entity=member_id,
                    )
                if role == VoteRole.REVISOR and member_id == dist.rapporteur_id:
                    raise ValidationError(
                        "the rapporteur cannot record a reviewer position", entity=member_id,
                    )
            if await db.find_position(sr.id, member_id, kind, question) is not None:
                raise ConflictError(
                    f"member {member_id} already recorded a position for this question",
                    entity=member_id,
                )
            open_voting = await db.find_open_voting(sr.id, kind, question)
            if open_voting and await db.find_member_vote(open_voting.id, member_id):
                raise ConflictError(
                    f"member {member_id} already voted in {open_voting.label}",
                    entity=member_id,
                )

            vote = Vote(
                id=new_id(),
                session_id=sr.session_id,
                session_resource_id=sr.id,
                member_id=member_id,
                kind=kind,
                role=role,
                preliminary_decision_id=question,
                preliminary_outcome=preliminary_outcome,
                merit_decision_id=merit_decision_id,
                official_decision_id=official_decision_id,
                text=text.strip(),
            )
            await db.insert_vote(vote)
            if role == VoteRole.REVISOR:
                await add_reviewer(db, sr.resource_id, member_id, sr.id)
            await group_pending(db, sr)
            vote = await db.get_vote(vote.id)

        log.info("vote.position_recorded", session_resource_id=session_resource_id,
                 member_id=member_id, role=role.value, voting_id=vote.voting_id)
        return vote

    async def cast_vote(
        self,
        voting_id: str,
        member_id: str,
        *,
        follows_vote_id: str | None = None,
        participation: ParticipationStatus = ParticipationStatus.PRESENTE,
    ) -> tuple[Vote, TallyResult]:
        """Record or replace a member's vote in a voting.

        A PRESENTE vote follows a position; any other participation is a
        terminal choice without one. The presiding member can only vote
        while the voting is tied.
        """
        if participation == ParticipationStatus.PRESENTE and not follows_vote_id:
            raise ValidationError("a present vote must follow a recorded position", entity=member_id)
        if participation != ParticipationStatus.PRESENTE and follows_vote_id:
            raise ValidationError(
                f"a {participation.value} vote cannot follow a position", entity=member_id,
            )

        async with self.db.transaction() as db:
            voting, sr = await self._open_voting(db, voting_id)
            ctx = await load_context(db, self.directory, sr)
            is_president = member_id == ctx.president_id
            self._check_member(ctx, member_id, seated=not is_president)
            votes = await db.list_votes(voting_id)
            existing = next((v for v in votes if v.member_id == member_id), None)
            if existing is not None and existing.is_anchor:
                raise ValidationError(
                    f"member {member_id} holds a position in this voting", entity=member_id,
                )
            if is_president and not tally_with(votes, ctx).quality_vote_required:
                raise StateError(
                    "the presiding member only votes to break a tie", entity=member_id,
                )

            anchor = None
            if follows_vote_id:
                anchor = _follow_target(votes, follows_vote_id, member_id)
            fields = {
                "role": VoteRole.PRESIDENTE if is_president else VoteRole.VOTANTE,
                "participation": participation,
                "follows_vote_id": anchor.id if anchor else None,
                "preliminary_outcome": anchor.preliminary_outcome if anchor else None,
                "merit_decision_id": anchor.merit_decision_id if anchor else None,
                "official_decision_id": anchor.official_decision_id if anchor else None,
            }
            if existing is not None:
                vote_id = existing.id
                await db.update_vote(vote_id, **fields)
            else:
                vote_id = new_id()
                await db.insert_vote(Vote(
                    id=vote_id,
                    session_id=sr.session_id,
                    session_resource_id=sr.id,
                    member_id=member_id,
                    kind=voting.kind,
                    voting_id=voting_id,
                    preliminary_decision_id=voting.preliminary_decision_id,
                    **fields,
                ))
            result = await self._settle(db, voting_id, ctx)
            vote = await db.get_vote(vote_id)

        log.info("vote.cast", voting_id=voting_id, member_id=member_id,
                 role=vote.role.value, participation=participation.value,
                 follows=vote.follows_vote_id, replaced=existing is not None)
        return vote, result

    async def withdraw_vote(self, voting_id: str, member_id: str) -> TallyResult:
        """Remove a member's vote; a position still followed by others stays."""
        async with self.db.transaction() as db:
            _, sr = await self._open_voting(db, voting_id)
            vote = await db.find_member_vote(voting_id, member_id)
            if vote is None:
                raise NotFoundError(
                    f"member {member_id} has no vote in voting {voting_id}", entity=member_id,
                )
            if await db.count_followers(vote.id):
                raise StateError(
                    "the position is followed by other votes; change those first",
                    entity=vote.id,
                )
            await db.delete_vote(vote.id)
            ctx = await load_context(db, self.directory, sr)
            result = await self._settle(db, voting_id, ctx)
        log.info("vote.withdrawn", voting_id=voting_id, member_id=member_id)
        return result

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    async def _judgeable(self, db: Database, sr_id: str) -> SessionResource:
        sr = await require_session_resource(db, sr_id)
        await require_judging_session(db, sr.session_id)
        if sr.status != SessionResourceStatus.EM_PAUTA:
            raise StateError(
                f"resource {sr.resource_id} is already {sr.status.value}", entity=sr.id,
            )
        return sr

    async def _open_voting(self, db: Database, voting_id: str) -> tuple[Voting, SessionResource]:
        voting = await require_voting(db, voting_id)
        if voting.status != VotingStatus.PENDENTE:
            raise StateError(f"voting {voting_id} is already concluded", entity=voting_id)
        return voting, await self._judgeable(db, voting.session_resource_id)

    @staticmethod
    def _check_member(ctx: JudgmentContext, member_id: str, seated: bool = True) -> None:
        if seated and member_id not in ctx.roster:
            raise ValidationError(
                f"member {member_id} does not take part in the session", entity=member_id,
            )
        if member_id in ctx.impeded:
            raise ValidationError(
                f"member {member_id} is impeded for this resource", entity=member_id,
            )
        if member_id in ctx.absent:
            raise ValidationError(
                f"member {member_id} is registered absent for this resource", entity=member_id,
            )

    async def _settle(self, db: Database, voting_id: str, ctx: JudgmentContext) -> TallyResult:
        """Recompute the tally, dropping a quality vote that no tie needs any more."""
        votes = await db.list_votes(voting_id)
        result = tally_with(votes, ctx)
        if result.blocker == NoWinnerReason.INCOMPLETE or result.quality_vote_required:
            return result
        stale = [v for v in votes if v.role == VoteRole.PRESIDENTE]
        if not stale:
            return result
        for v in stale:
            await db.delete_vote(v.id)
            await db.log_event(voting_id, "quality_vote_discarded", {"member_id": v.member_id})
            log.info("vote.quality_discarded", voting_id=voting_id, member_id=v.member_id)
        return tally_with(await db.list_votes(voting_id), ctx)
