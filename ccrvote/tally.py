"""Vote tally: decision clusters, ties, quality vote and winner."""

from __future__ import annotations

import unicodedata
from collections.abc import Iterable

from .models import (
    Distribution,
    Gender,
    Member,
    NoWinnerReason,
    ParticipationStatus,
    TallyResult,
    Vote,
    Winner,
)

_PARTICIPATION_COUNTERS = {
    ParticipationStatus.ABSTENCAO: "abstentions",
    ParticipationStatus.AUSENTE: "absences",
    ParticipationStatus.IMPEDIDO: "impediments",
    ParticipationStatus.SUSPEITO: "suspicions",
}


def resolve_cluster(vote: Vote, votes_by_id: dict[str, Vote]) -> str | None:
    """Return the anchor vote id a PRESENTE vote counts towards.

    Anchors count towards themselves. A follower counts towards the anchor
    it follows; a follower of another follower is attributed to that
    follower's anchor. Dangling references resolve to None.
    """
    if vote.is_anchor:
        return vote.id
    target = votes_by_id.get(vote.follows_vote_id or "")
    if target is None:
        return None
    if target.is_anchor:
        return target.id
    anchor = votes_by_id.get(target.follows_vote_id or "")
    if anchor is not None and anchor.is_anchor:
        return anchor.id
    return None


def _ordered_anchors(votes: list[Vote], distribution: Distribution | None) -> list[Vote]:
    anchors = [
        v for v in votes
        if v.is_anchor and v.participation == ParticipationStatus.PRESENTE
    ]
    if distribution is None:
        return anchors

    def rank(v: Vote) -> int:
        if v.member_id == distribution.rapporteur_id:
            return 0
        if v.member_id in distribution.reviewer_ids:
            return 1
        return 2

    return sorted(anchors, key=rank)


def _tied(clusters: dict[str, int]) -> tuple[int, list[str]]:
    max_count = max(clusters.values(), default=0)
    return max_count, [k for k, c in clusters.items() if c == max_count]


def tally_votes(
    votes: list[Vote],
    *,
    roster: Iterable[str],
    president_id: str | None = None,
    impeded: Iterable[str] = (),
    absent: Iterable[str] = (),
    distribution: Distribution | None = None,
) -> TallyResult:
    """Compute the tally of one voting from its current votes.

    ``roster`` is the ordered list of participating member ids. Members in
    ``impeded`` or ``absent`` never take part; anchor voters (RELATOR /
    REVISOR) and the presiding member are excluded from the members still
    expected to vote, the latter unless a quality vote is required.
    """
    impeded = set(impeded)
    absent = set(absent)
    votes_by_id = {v.id: v for v in votes}

    anchors = _ordered_anchors(votes, distribution)
    anchor_members = {v.member_id for v in anchors}

    president_vote = next(
        (v for v in votes
         if president_id and v.member_id == president_id and not v.is_anchor),
        None,
    )

    available = [
        m for m in roster
        if m not in impeded and m not in absent
        and m not in anchor_members and m != president_id
    ]
    available_set = set(available)

    follower_votes: dict[str, Vote] = {}
    for v in votes:
        if v.member_id in available_set and not v.is_anchor:
            follower_votes[v.member_id] = v

    result = TallyResult(president_id=president_id)
    result.available_member_ids = list(available)
    result.pending_member_ids = [m for m in available if m not in follower_votes]
    base_complete = not result.pending_member_ids

    clusters: dict[str, int] = {a.id: 1 for a in anchors}
    for v in follower_votes.values():
        counter = _PARTICIPATION_COUNTERS.get(v.participation)
        if counter:
            setattr(result, counter, getattr(result, counter) + 1)
            continue
        key = resolve_cluster(v, votes_by_id)
        if key in clusters:
            clusters[key] += 1
    result.clusters = clusters

    if not base_complete:
        result.blocker = NoWinnerReason.INCOMPLETE
        return result

    max_count, tied = _tied(clusters)
    result.tie = len(tied) > 1 and max_count > 0
    result.quality_vote_required = result.tie

    if result.quality_vote_required:
        if president_id:
            result.available_member_ids.append(president_id)
        if president_vote is None:
            result.pending_member_ids = [president_id] if president_id else []
            result.blocker = NoWinnerReason.QUALITY_VOTE_PENDING
            return result

        result.quality_vote_cast = True
        counter = _PARTICIPATION_COUNTERS.get(president_vote.participation)
        if counter:
            setattr(result, counter, getattr(result, counter) + 1)
        else:
            key = resolve_cluster(president_vote, votes_by_id)
            if key in clusters:
                clusters[key] += 1
        max_count, tied = _tied(clusters)

    result.complete = True
    if max_count == 0:
        result.blocker = NoWinnerReason.NO_VOTES
    elif len(tied) > 1:
        result.blocker = NoWinnerReason.TIED_AFTER_QUALITY_VOTE
    else:
        anchor = votes_by_id[tied[0]]
        result.winner = Winner(
            cluster_key=anchor.id,
            member_id=anchor.member_id,
            vote_count=max_count,
        )
    return result


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def _name_key(member: Member) -> str:
    decomposed = unicodedata.normalize("NFKD", member.name)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def order_members(members: list[Member]) -> list[Member]:
    """Order members for the voting roll.

    Members seated for the municipality or as vice-president alternate
    with the other seated members, each group alphabetical; members
    without a seat come last.
    """
    def is_public_seat(m: Member) -> bool:
        return "Município" in m.role or "Vice-Presidente" in m.role

    public = sorted((m for m in members if m.role and is_public_seat(m)), key=_name_key)
    others = sorted((m for m in members if m.role and not is_public_seat(m)), key=_name_key)
    unseated = sorted((m for m in members if not m.role), key=_name_key)

    ordered: list[Member] = []
    for i in range(max(len(public), len(others))):
        if i < len(public):
            ordered.append(public[i])
        if i < len(others):
            ordered.append(others[i])
    return ordered + unseated


def describe_result(winner: Winner, member: Member) -> str:
    article = "da" if member.gender == Gender.FEMININO else "do"
    noun = "voto" if winner.vote_count == 1 else "votos"
    return f"{winner.vote_count} {noun} a favor da posição {article} {member.name}"
