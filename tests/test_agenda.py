"""Tests for session resource status transitions."""

import pytest

from conftest import merit_positions
from ccrvote.errors import AuthorizationError, ConflictError, StateError, ValidationError
from ccrvote.models import (
    Actor,
    PreliminaryOutcome,
    SessionResourceStatus,
    VoteRole,
    VotingKind,
)
from ccrvote.agenda import AgendaService

ADMIN = Actor("admin", is_admin=True)
CLERK = Actor("clerk")


async def unanimous(world, kind, **refs):
    """rel records a single position and everyone follows it."""
    vote = await world.ledger.record_position(
        world.sr_id, "rel", VoteRole.RELATOR, kind, text="Voto da relatora.", **refs,
    )
    voting, _ = await world.votings.declare_unanimous(vote.voting_id)
    return voting


async def judged_on_merits(world):
    voting_id, rel, rev = await merit_positions(world)
    for member in ("m1", "m3"):
        await world.ledger.cast_vote(voting_id, member, follows_vote_id=rel.id)
    await world.ledger.cast_vote(voting_id, "m2", follows_vote_id=rev.id)
    voting, _ = await world.votings.conclude(voting_id)
    return voting


# --- Scheduling ---

@pytest.mark.asyncio
async def test_schedule_assigns_positions(world):
    second = await world.agenda.schedule("S1", "RES-2")
    assert second.position == 2
    assert second.status == SessionResourceStatus.EM_PAUTA
    with pytest.raises(ConflictError):
        await world.agenda.schedule("S1", "RES-2")


# --- Simple outcomes ---

@pytest.mark.asyncio
async def test_suspend(world):
    sr = await world.agenda.suspend(world.sr_id, "Retirado de pauta a pedido da parte.")
    assert sr.status == SessionResourceStatus.SUSPENSO
    assert sr.minutes_text == "Retirado de pauta a pedido da parte."
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")


@pytest.mark.asyncio
async def test_minutes_text_required(world):
    with pytest.raises(ValidationError):
        await world.agenda.suspend(world.sr_id, "   ")
    with pytest.raises(ValidationError):
        await world.agenda.suspend(world.sr_id, "Suspenso por [DETALHAR].")


@pytest.mark.asyncio
async def test_em_pauta_is_not_a_target(world):
    with pytest.raises(ValidationError):
        await world.agenda.set_status(
            world.sr_id, SessionResourceStatus.EM_PAUTA, minutes_text="x",
        )


@pytest.mark.asyncio
async def test_diligence_requires_positive_days(world):
    for days in (0, -3, None):
        with pytest.raises(ValidationError):
            await world.agenda.set_status(
                world.sr_id, SessionResourceStatus.DILIGENCIA,
                minutes_text="Baixa em diligência.", diligence_days=days,
            )
    sr = await world.agenda.request_diligence(world.sr_id, "Baixa em diligência.", 30)
    assert sr.status == SessionResourceStatus.DILIGENCIA
    assert sr.diligence_days == 30


@pytest.mark.asyncio
async def test_view_request_checks_requester(world):
    with pytest.raises(ValidationError):
        await world.agenda.set_status(
            world.sr_id, SessionResourceStatus.PEDIDO_VISTA, minutes_text="Vista.",
        )
    with pytest.raises(ValidationError):
        await world.agenda.request_view(world.sr_id, "Vista.", "pres")
    await world.db.add_impediment("RES-1", "m2")
    with pytest.raises(ValidationError):
        await world.agenda.request_view(world.sr_id, "Vista.", "m2")

    sr = await world.agenda.request_view(world.sr_id, "Pedido de vista.", "m1")
    assert sr.status == SessionResourceStatus.PEDIDO_VISTA
    assert sr.view_requested_by == "m1"


@pytest.mark.asyncio
async def test_transitions_need_published_session(world):
    await world.sessions.create("2/2026", "2026-04-10", ["rel"], session_id="S2")
    sr = await world.agenda.schedule("S2", "RES-9")
    with pytest.raises(StateError):
        await world.agenda.suspend(sr.id, "Suspenso.")


# --- Judgment ---

@pytest.mark.asyncio
async def test_judge_after_merits(world):
    await judged_on_merits(world)
    sr = await world.agenda.judge(world.sr_id, "Por maioria, deu-se provimento.")
    assert sr.status == SessionResourceStatus.JULGADO


@pytest.mark.asyncio
async def test_judge_requires_concluded_voting(world):
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")
    await merit_positions(world)
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")


@pytest.mark.asyncio
async def test_judge_rejects_open_voting(world):
    await unanimous(world, VotingKind.NAO_CONHECIMENTO,
                    preliminary_decision_id="PRE-DECADENCIA",
                    preliminary_outcome=PreliminaryOutcome.AFASTAR)
    await merit_positions(world)
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")


@pytest.mark.asyncio
async def test_judge_not_admitted(world):
    """An accepted preliminary ends the judgment without merits."""
    await unanimous(world, VotingKind.NAO_CONHECIMENTO,
                    preliminary_decision_id="PRE-INTEMPESTIVIDADE")
    sr = await world.agenda.judge(world.sr_id, "Recurso não conhecido.")
    assert sr.status == SessionResourceStatus.JULGADO


@pytest.mark.asyncio
async def test_judge_official_decision_counts_as_not_admitted(world):
    await unanimous(world, VotingKind.NAO_CONHECIMENTO, official_decision_id="OF-NULIDADE")
    sr = await world.agenda.judge(world.sr_id, "Nulidade declarada de ofício.")
    assert sr.status == SessionResourceStatus.JULGADO


@pytest.mark.asyncio
async def test_judge_rejected_preliminary_needs_merits(world):
    await unanimous(world, VotingKind.NAO_CONHECIMENTO,
                    preliminary_decision_id="PRE-DECADENCIA",
                    preliminary_outcome=PreliminaryOutcome.AFASTAR)
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")

    await unanimous(world, VotingKind.MERITO, merit_decision_id="MER-PROVIMENTO")
    sr = await world.agenda.judge(world.sr_id, "Preliminar afastada; provido.")
    assert sr.status == SessionResourceStatus.JULGADO


@pytest.mark.asyncio
async def test_judge_rejects_merits_after_non_admission(world):
    await unanimous(world, VotingKind.NAO_CONHECIMENTO,
                    preliminary_decision_id="PRE-ILEGITIMIDADE")
    await unanimous(world, VotingKind.MERITO, merit_decision_id="MER-NAO-PROVIMENTO")
    with pytest.raises(StateError):
        await world.agenda.judge(world.sr_id, "Julgado.")


@pytest.mark.asyncio
async def test_judge_blocked_by_voting_left_open_in_earlier_session(world):
    """A merits voting interrupted by a view request keeps the appeal from judgment."""
    stale_id, _, _ = await merit_positions(world)
    await world.agenda.request_view(world.sr_id, "Vista ao conselheiro Davi.", "m2")

    await world.sessions.create("2/2026", "2026-04-14", ["rel", "rev", "m1", "m2", "m3"],
                                president_id="pres", session_id="S2")
    await world.sessions.publish("S2", "DOE 57", "2026-04-01")
    sr2 = await world.agenda.schedule("S2", "RES-1")
    await world.distributions.carry_forward("RES-1", "S1", "S2")

    async def unanimous_in_s2(kind, **refs):
        vote = await world.ledger.record_position(
            sr2.id, "rel", VoteRole.RELATOR, kind, text="Voto da relatora.", **refs,
        )
        await world.votings.declare_unanimous(vote.voting_id)

    await unanimous_in_s2(VotingKind.NAO_CONHECIMENTO,
                          preliminary_decision_id="PRE-DECADENCIA",
                          preliminary_outcome=PreliminaryOutcome.AFASTAR)
    with pytest.raises(StateError) as exc:
        await world.agenda.judge(sr2.id, "Preliminar afastada.")
    assert exc.value.entity == stale_id
    assert "session S1" in exc.value.message

    await world.agenda.remove_result(world.sr_id, CLERK)
    with pytest.raises(StateError):
        await world.agenda.judge(sr2.id, "Preliminar afastada.")

    await unanimous_in_s2(VotingKind.MERITO, merit_decision_id="MER-NAO-PROVIMENTO")
    sr = await world.agenda.judge(sr2.id, "Preliminar afastada; negado provimento.")
    assert sr.status == SessionResourceStatus.JULGADO


@pytest.mark.asyncio
async def test_no_votes_after_judgment(world):
    await judged_on_merits(world)
    await world.agenda.judge(world.sr_id, "Julgado.")
    with pytest.raises(StateError):
        await world.ledger.record_position(
            world.sr_id, "rel", VoteRole.RELATOR, VotingKind.NAO_CONHECIMENTO,
            text="x", preliminary_decision_id="PRE-DECADENCIA",
        )


# --- Removing and reverting results ---

@pytest.mark.asyncio
async def test_remove_result_of_suspension(world):
    await world.agenda.suspend(world.sr_id, "Suspenso.")
    sr = await world.agenda.remove_result(world.sr_id, CLERK)
    assert sr.status == SessionResourceStatus.EM_PAUTA
    assert sr.minutes_text == ""
    with pytest.raises(StateError):
        await world.agenda.remove_result(world.sr_id, CLERK)


@pytest.mark.asyncio
async def test_remove_result_drops_reviewer_added_by_position(world):
    await world.ledger.record_position(
        world.sr_id, "m2", VoteRole.REVISOR, VotingKind.MERITO,
        text="Provimento parcial.", merit_decision_id="MER-PROVIMENTO-PARCIAL",
    )
    assert (await world.distributions.active("RES-1")).reviewer_ids == ["rev", "m2"]

    await world.agenda.suspend(world.sr_id, "Suspenso.")
    await world.agenda.remove_result(world.sr_id, CLERK)
    assert (await world.distributions.active("RES-1")).reviewer_ids == ["rev"]
    dist = await world.distributions.active("RES-1")
    events = [e["event"] for e in await world.db.get_logs(dist.id)]
    assert events == ["reviewer_added", "reviewers_dropped"]


@pytest.mark.asyncio
async def test_remove_result_of_judgment_needs_no_admin(world):
    """Any user may remove a judgment; only the revert is restricted."""
    await judged_on_merits(world)
    await world.agenda.judge(world.sr_id, "Julgado.")
    sr = await world.agenda.remove_result(world.sr_id, CLERK)
    assert sr.status == SessionResourceStatus.EM_PAUTA
    assert await world.db.list_votings(world.sr_id) == []


@pytest.mark.asyncio
async def test_remove_result_then_judge_again(world):
    """Removing a judgment deletes its votings; the same votes yield the same winner."""
    first = await judged_on_merits(world)
    await world.agenda.judge(world.sr_id, "Julgado.")

    sr = await world.agenda.remove_result(world.sr_id, CLERK)
    assert sr.status == SessionResourceStatus.EM_PAUTA
    assert await world.db.list_votings(world.sr_id) == []

    second = await judged_on_merits(world)
    assert second.id != first.id
    assert second.winning_member_id == first.winning_member_id == "rel"
    assert second.winning_vote_count == first.winning_vote_count
    assert second.votes_against == first.votes_against
    events = [e["event"] for e in await world.db.get_logs(world.sr_id)]
    assert "result_removed" in events


@pytest.mark.asyncio
async def test_revert_judgment_keeps_votings(world):
    voting = await judged_on_merits(world)
    await world.agenda.judge(world.sr_id, "Julgado.")
    with pytest.raises(AuthorizationError):
        await world.agenda.revert_judgment(world.sr_id, CLERK)

    sr = await world.agenda.revert_judgment(world.sr_id, ADMIN)
    assert sr.status == SessionResourceStatus.EM_PAUTA
    kept = await world.db.list_votings(world.sr_id)
    assert [v.id for v in kept] == [voting.id]

    reopened = await world.votings.reopen(voting.id, ADMIN)
    assert reopened.winning_member_id is None


@pytest.mark.asyncio
async def test_correction_blocked_while_judged(world):
    voting = await judged_on_merits(world)
    await world.agenda.judge(world.sr_id, "Julgado.")
    with pytest.raises(StateError):
        await world.votings.reopen(voting.id, ADMIN)
    with pytest.raises(StateError):
        await world.votings.recompute(voting.id, ADMIN)


# --- Absences & presiding member ---

@pytest.mark.asyncio
async def test_absent_member_leaves_the_roll(world):
    sr = await world.agenda.set_absences(world.sr_id, ["m2", "m2"])
    assert sr.absent_member_ids == ["m2"]

    voting_id, rel, _ = await merit_positions(world)
    await world.ledger.cast_vote(voting_id, "m1", follows_vote_id=rel.id)
    _, result = await world.ledger.cast_vote(voting_id, "m3", follows_vote_id=rel.id)
    assert result.complete
    assert "m2" not in result.available_member_ids
    with pytest.raises(ValidationError):
        await world.ledger.cast_vote(voting_id, "m2", follows_vote_id=rel.id)


@pytest.mark.asyncio
async def test_absences_validated_and_frozen(world):
    with pytest.raises(ValidationError):
        await world.agenda.set_absences(world.sr_id, ["pres"])
    await judged_on_merits(world)
    with pytest.raises(StateError):
        await world.agenda.set_absences(world.sr_id, ["m1"])


@pytest.mark.asyncio
async def test_specific_president_must_take_part(world):
    with pytest.raises(ValidationError):
        await world.agenda.set_specific_president(world.sr_id, "pres")
    sr = await world.agenda.set_specific_president(world.sr_id, "m3")
    assert sr.specific_president_id == "m3"
    sr = await world.agenda.set_specific_president(world.sr_id, None)
    assert sr.specific_president_id is None


@pytest.mark.asyncio
async def test_custom_minutes_placeholder(world):
    agenda = AgendaService(world.db, minutes_placeholder="XXX")
    with pytest.raises(ValidationError):
        await agenda.suspend(world.sr_id, "Suspenso XXX.")
    sr = await agenda.suspend(world.sr_id, "Suspenso [DETALHAR].")
    assert sr.status == SessionResourceStatus.SUSPENSO
