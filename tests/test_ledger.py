"""Tests for the vote ledger: positions, follower votes, quality vote."""

import pytest

from conftest import build_world, merit_positions
from ccrvote.directory import StaticDirectory
from ccrvote.errors import ConflictError, NotFoundError, StateError, ValidationError
from ccrvote.ledger import VoteLedger
from ccrvote.models import (
    NoWinnerReason,
    ParticipationStatus,
    PreliminaryOutcome,
    VoteRole,
    VotingKind,
)


# --- Positions ---

@pytest.mark.asyncio
async def test_positions_grouped_into_one_merit_voting(world):
    """RELATOR and REVISOR merit positions land in the same voting."""
    voting_id, rel, rev = await merit_positions(world)
    assert rel.voting_id == rev.voting_id == voting_id
    votings = await world.db.list_votings(world.sr_id)
    assert len(votings) == 1
    assert votings[0].kind == VotingKind.MERITO
    assert votings[0].order == 1


@pytest.mark.asyncio
async def test_relator_must_be_rapporteur(world):
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "m1", VoteRole.RELATOR, VotingKind.MERITO,
            text="x", merit_decision_id="MER-PROVIMENTO",
        )


@pytest.mark.asyncio
async def test_duplicate_merit_position_rejected(world):
    await merit_positions(world)
    with pytest.raises(ConflictError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.MERITO,
            text="again", merit_decision_id="MER-NAO-PROVIMENTO",
        )


@pytest.mark.asyncio
async def test_position_requires_text(world):
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.MERITO,
            text="  ", merit_decision_id="MER-PROVIMENTO",
        )


@pytest.mark.asyncio
async def test_decision_references_validated(world):
    """Merit needs a merit decision; an official decision needs ACATAR."""
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.MERITO, text="x",
        )
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.MERITO,
            text="x", merit_decision_id="PRE-INTEMPESTIVIDADE",
        )
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.NAO_CONHECIMENTO,
            text="x", preliminary_decision_id="PRE-INTEMPESTIVIDADE",
            preliminary_outcome=PreliminaryOutcome.AFASTAR,
            official_decision_id="OF-NULIDADE",
        )
    with pytest.raises(ValidationError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.NAO_CONHECIMENTO, text="x",
        )


@pytest.mark.asyncio
async def test_preliminary_position_defaults_to_acatar(world):
    vote = await world.ledger.record_position(
        world.sr_id, "rel", VoteRole.RELATOR, VotingKind.NAO_CONHECIMENTO,
        text="Acolho a preliminar.", preliminary_decision_id="PRE-INTEMPESTIVIDADE",
    )
    assert vote.preliminary_outcome == PreliminaryOutcome.ACATAR


@pytest.mark.asyncio
async def test_one_voting_per_preliminary(world):
    """Non-admission positions split by preliminary decision; merits separate."""
    for prelim in ("PRE-INTEMPESTIVIDADE", "PRE-ILEGITIMIDADE"):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.NAO_CONHECIMENTO,
            text=f"Sobre {prelim}", preliminary_decision_id=prelim,
            preliminary_outcome=PreliminaryOutcome.AFASTAR,
        )
    await merit_positions(world)
    votings = await world.db.list_votings(world.sr_id)
    assert [(v.kind, v.preliminary_decision_id) for v in votings] == [
        (VotingKind.NAO_CONHECIMENTO, "PRE-INTEMPESTIVIDADE"),
        (VotingKind.NAO_CONHECIMENTO, "PRE-ILEGITIMIDADE"),
        (VotingKind.MERITO, None),
    ]
    assert [v.order for v in votings] == [1, 2, 3]


@pytest.mark.asyncio
async def test_reviewer_position_extends_distribution(world):
    """A REVISOR position from a new member adds them to the reviewers."""
    await world.ledger.record_position(
        world.sr_id, "m3", VoteRole.REVISOR, VotingKind.MERITO,
        text="Divirjo.", merit_decision_id="MER-PROVIMENTO-PARCIAL",
    )
    dist = await world.db.active_distribution(world.resource_id)
    assert dist.reviewer_ids == ["rev", "m3"]


# --- Follower votes ---

@pytest.mark.asyncio
async def test_cast_vote_follows_position(world):
    voting_id, rel, _ = await merit_positions(world)
    vote, result = await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    assert vote.role == VoteRole.VOTANTE
    assert vote.follows_vote_id == rel.id
    assert vote.merit_decision_id == "MER-PROVIMENTO"
    assert result.clusters[rel.id] == 2
    assert result.pending_member_ids == ["m3", "m2"]


@pytest.mark.asyncio
async def test_replacing_vote_keeps_identity(world):
    """A second submission replaces the first in place."""
    voting_id, rel, rev = await merit_positions(world)
    first, _ = await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    second, result = await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rev.id)
    assert second.id == first.id
    assert second.follows_vote_id == rev.id
    assert result.clusters == {rel.id: 1, rev.id: 2}
    votes = await world.db.list_votes(voting_id)
    assert len([v for v in votes if v.member_id == "m1"]) == 1


@pytest.mark.asyncio
async def test_following_a_follower_stores_the_anchor(world):
    voting_id, rel, _ = await merit_positions(world)
    m1_vote, _ = await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    m2_vote, _ = await world.ledger.cast_vote(voting_id, "m2", follows_vote_id=m1_vote.id)
    assert m2_vote.follows_vote_id == rel.id


@pytest.mark.asyncio
async def test_present_vote_needs_follow(world):
    voting_id, _, _ = await merit_positions(world)
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "m1")


@pytest.mark.asyncio
async def test_abstention_has_no_follow(world):
    voting_id, rel, _ = await merit_positions(world)
    vote, result = await world.ledger.cast_vote(
        voting_id, "m1", participation=ParticipationStatus.ABSTENCAO,
    )
    assert vote.follows_vote_id is None
    assert result.abstentions == 1
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(
            voting_id, "m2", follows_vote_id=rel.id,
            participation=ParticipationStatus.AUSENTE,
        )


@pytest.mark.asyncio
async def test_unknown_follow_target_rejected(world):
    voting_id, _, _ = await merit_positions(world)
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "m1", follows_vote_id="nope")


@pytest.mark.asyncio
async def test_anchor_cannot_cast_follower_vote(world):
    voting_id, _, rev = await merit_positions(world)
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "rel", follows_vote_id=rev.id)


@pytest.mark.asyncio
async def test_impeded_member_cannot_vote(world):
    await world.db.add_impediment(world.resource_id, "m3", "sócio da recorrente")
    voting_id, rel, _ = await merit_positions(world)
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "m3", follows_vote_id=rel.id)


@pytest.mark.asyncio
async def test_non_participant_cannot_vote(world):
    voting_id, rel, _ = await merit_positions(world)
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "stranger", follows_vote_id=rel.id)


# --- Quality vote ---

@pytest.mark.asyncio
async def test_president_cannot_vote_without_tie(world):
    voting_id, rel, _ = await merit_positions(world)
    with pytest.raises(StateError):
        await world.ledger.cast_vote(voting_id, "pres", follows_vote_id=rel.id)


@pytest.mark.asyncio
async def test_stale_quality_vote_discarded(memory_db):
    """Quality vote is dropped once a changed vote resolves the tie."""
    world = await build_world(memory_db, members=["rel", "rev", "m1", "m2"])
    voting_id, rel, rev = await merit_positions(world)
    await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    _, tied = await world.ledger.cast_vote(voting_id, "m2", follows_vote_id=rev.id)
    assert tied.quality_vote_required

    quality, result = await world.ledger.cast_vote(voting_id, "pres", follows_vote_id=rel.id)
    assert quality.role == VoteRole.PRESIDENTE
    assert result.winner.vote_count == 3

    _, result = await world.ledger.cast_vote(voting_id, "m2", follows_vote_id=rel.id)
    assert not result.tie
    assert not result.quality_vote_cast
    assert result.clusters == {rel.id: 3, rev.id: 1}
    votes = await world.db.list_votes(voting_id)
    assert all(v.role != VoteRole.PRESIDENTE for v in votes)
    events = [e["event"] for e in await world.db.get_logs(voting_id)]
    assert "quality_vote_discarded" in events


# --- Withdrawal ---

@pytest.mark.asyncio
async def test_withdraw_vote(world):
    voting_id, rel, _ = await merit_positions(world)
    await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    result = await world.ledger.withdraw_vote(voting_id, "m1")
    assert "m1" in result.pending_member_ids
    assert result.blocker == NoWinnerReason.INCOMPLETE


@pytest.mark.asyncio
async def test_followed_position_cannot_be_withdrawn(world):
    voting_id, rel, _ = await merit_positions(world)
    await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    with pytest.raises(StateError):
        await world.ledger.withdraw_vote(voting_id, "rel")


@pytest.mark.asyncio
async def test_withdraw_missing_vote(world):
    voting_id, _, _ = await merit_positions(world)
    with pytest.raises(NotFoundError):
        await world.ledger.withdraw_vote(voting_id, "m2")


# --- Impediment sources ---

@pytest.mark.asyncio
async def test_external_impediment_source(world):
    """Impediments resolved outside the database are honoured."""
    ledger = VoteLedger(world.db, directory=StaticDirectory({"RES-1": {"m3"}}))
    voting_id, rel, _ = await merit_positions(world)
    with pytest.raises(ValidationError):
        await ledger.cast_vote(voting_id, "m3", follows_vote_id=rel.id)
    _, result = await ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    assert result.available_member_ids == ["m1", "m2"]
