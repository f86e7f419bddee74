"""Core data models for ccrvote."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ParticipationStatus(str, Enum):
    PRESENTE = "PRESENTE"
    AUSENTE = "AUSENTE"
    IMPEDIDO = "IMPEDIDO"
    ABSTENCAO = "ABSTENCAO"
    SUSPEITO = "SUSPEITO"


class VoteRole(str, Enum):
    RELATOR = "RELATOR"
    REVISOR = "REVISOR"
    VOTANTE = "VOTANTE"
    PRESIDENTE = "PRESIDENTE"


class VotingKind(str, Enum):
    NAO_CONHECIMENTO = "NAO_CONHECIMENTO"
    MERITO = "MERITO"


class VotingStatus(str, Enum):
    PENDENTE = "PENDENTE"
    CONCLUIDA = "CONCLUIDA"


class SessionResourceStatus(str, Enum):
    EM_PAUTA = "EM_PAUTA"
    SUSPENSO = "SUSPENSO"
    DILIGENCIA = "DILIGENCIA"
    PEDIDO_VISTA = "PEDIDO_VISTA"
    JULGADO = "JULGADO"


class SessionStatus(str, Enum):
    PUBLICACAO = "PUBLICACAO"
    PENDENTE = "PENDENTE"
    CONCLUIDA = "CONCLUIDA"
    CANCELADA = "CANCELADA"


class DecisionType(str, Enum):
    PRELIMINAR = "PRELIMINAR"
    MERITO = "MERITO"
    OFICIO = "OFICIO"


class PreliminaryOutcome(str, Enum):
    ACATAR = "ACATAR"
    AFASTAR = "AFASTAR"


class Gender(str, Enum):
    MASCULINO = "MASCULINO"
    FEMININO = "FEMININO"


class NoWinnerReason(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    QUALITY_VOTE_PENDING = "QUALITY_VOTE_PENDING"
    TIED_AFTER_QUALITY_VOTE = "TIED_AFTER_QUALITY_VOTE"
    NO_VOTES = "NO_VOTES"


ANCHOR_ROLES = frozenset({VoteRole.RELATOR, VoteRole.REVISOR})

TERMINAL_RESOURCE_STATUSES = frozenset({
    SessionResourceStatus.SUSPENSO,
    SessionResourceStatus.DILIGENCIA,
    SessionResourceStatus.PEDIDO_VISTA,
    SessionResourceStatus.JULGADO,
})

# Appeal-level status the Resource service adopts after a transition.
APPEAL_STATUS = {
    SessionResourceStatus.EM_PAUTA: "JULGAMENTO",
    SessionResourceStatus.SUSPENSO: "SUSPENSO",
    SessionResourceStatus.DILIGENCIA: "DILIGENCIA",
    SessionResourceStatus.PEDIDO_VISTA: "PEDIDO_VISTA",
    SessionResourceStatus.JULGADO: "PUBLICACAO_ACORDAO",
}


@dataclass
class Member:
    """A tribunal participant."""

    id: str
    name: str
    role: str = ""  # seat, e.g. "Vice-Presidente", "Representante do Município"
    gender: Gender = Gender.MASCULINO
    active: bool = True


@dataclass
class Decision:
    """Immutable catalog entry used to label votes and outcomes."""

    id: str
    type: DecisionType
    identifier: str
    accept_text: str = ""
    reject_text: str = ""


@dataclass
class Session:
    id: str
    number: str
    date: str
    status: SessionStatus = SessionStatus.PUBLICACAO
    president_id: str | None = None
    member_ids: list[str] = field(default_factory=list)
    administrative_matters: str = ""
    publication_number: str = ""
    publication_date: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass
class SessionResource:
    """Scheduling and judgment record of one appeal within one session."""

    id: str
    session_id: str
    resource_id: str
    position: int = 0
    status: SessionResourceStatus = SessionResourceStatus.EM_PAUTA
    minutes_text: str = ""
    diligence_days: int | None = None
    view_requested_by: str | None = None
    specific_president_id: str | None = None
    absent_member_ids: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Distribution:
    id: str
    resource_id: str
    session_id: str
    rapporteur_id: str
    reviewer_ids: list[str] = field(default_factory=list)
    number: int = 1
    is_active: bool = True
    carried_from_session_id: str | None = None
    created_at: str = ""


@dataclass
class Voting:
    """One formal question (non-admission or merits) posed for a session resource."""

    id: str
    resource_id: str
    session_resource_id: str
    session_id: str
    kind: VotingKind
    status: VotingStatus = VotingStatus.PENDENTE
    preliminary_decision_id: str | None = None
    order: int = 0

    # Outcome, filled on conclusion
    completed_at: str = ""
    judged_in_session_id: str | None = None
    winning_vote_id: str | None = None
    winning_member_id: str | None = None
    winning_vote_count: int = 0
    quality_vote_used: bool = False
    quality_vote_member_id: str | None = None
    total_votes: int = 0
    votes_in_favor: int = 0
    votes_against: int = 0
    abstentions: int = 0
    absences: int = 0
    impediments: int = 0
    suspicions: int = 0
    final_text: str = ""

    created_at: str = ""
    updated_at: str = ""

    @property
    def label(self) -> str:
        if self.kind == VotingKind.MERITO:
            return "Mérito"
        if self.preliminary_decision_id:
            return f"Não Conhecimento - {self.preliminary_decision_id}"
        return "Não Conhecimento"


@dataclass
class Vote:
    """One member's position within a voting."""

    id: str
    session_id: str
    session_resource_id: str
    member_id: str
    kind: VotingKind
    role: VoteRole = VoteRole.VOTANTE
    participation: ParticipationStatus = ParticipationStatus.PRESENTE
    voting_id: str | None = None
    follows_vote_id: str | None = None
    preliminary_decision_id: str | None = None
    preliminary_outcome: PreliminaryOutcome | None = None
    merit_decision_id: str | None = None
    official_decision_id: str | None = None
    text: str = ""
    created_at: str = ""

    @property
    def is_anchor(self) -> bool:
        return self.role in ANCHOR_ROLES


@dataclass
class Winner:
    cluster_key: str  # anchor vote id
    member_id: str    # anchor member
    vote_count: int


@dataclass
class TallyResult:
    """Output of the vote tally engine for one voting."""

    clusters: dict[str, int] = field(default_factory=dict)
    tie: bool = False
    quality_vote_required: bool = False
    quality_vote_cast: bool = False
    complete: bool = False
    winner: Winner | None = None
    blocker: NoWinnerReason | None = None
    available_member_ids: list[str] = field(default_factory=list)
    pending_member_ids: list[str] = field(default_factory=list)
    president_id: str | None = None
    abstentions: int = 0
    absences: int = 0
    impediments: int = 0
    suspicions: int = 0

    @property
    def total_votes(self) -> int:
        return sum(self.clusters.values())

    @property
    def votes_against(self) -> int:
        if self.winner is None:
            return 0
        return self.total_votes - self.winner.vote_count


@dataclass
class CarryForwardReport:
    created: list[Distribution] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # resource ids
    missing: list[str] = field(default_factory=list)  # resource ids


@dataclass
class Actor:
    """The user performing an operation."""

    user: str
    is_admin: bool = False
