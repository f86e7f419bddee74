"""Decision catalog: preliminary, merit and official decision codes."""

from __future__ import annotations

from pathlib import Path

import yaml

from .models import Decision, DecisionType

DEFAULT_DECISIONS: list[Decision] = [
    Decision("PRE-INTEMPESTIVIDADE", DecisionType.PRELIMINAR, "Intempestividade",
             accept_text="acatar a preliminar de intempestividade",
             reject_text="afastar a preliminar de intempestividade"),
    Decision("PRE-ILEGITIMIDADE", DecisionType.PRELIMINAR, "Ilegitimidade",
             accept_text="acatar a preliminar de ilegitimidade",
             reject_text="afastar a preliminar de ilegitimidade"),
    Decision("PRE-DECADENCIA", DecisionType.PRELIMINAR, "Decadência",
             accept_text="acatar a preliminar de decadência",
             reject_text="afastar a preliminar de decadência"),
    Decision("MER-PROVIMENTO", DecisionType.MERITO, "Provimento"),
    Decision("MER-NAO-PROVIMENTO", DecisionType.MERITO, "Não Provimento"),
    Decision("MER-PROVIMENTO-PARCIAL", DecisionType.MERITO, "Provimento Parcial"),
    Decision("OF-NULIDADE", DecisionType.OFICIO, "Nulidade de ofício"),
]


class DecisionCatalog:
    """Read-only lookup over decision entries."""

    def __init__(self, decisions: list[Decision] | None = None):
        self._by_id: dict[str, Decision] = {}
        for d in decisions if decisions is not None else DEFAULT_DECISIONS:
            self._by_id[d.id] = d

    def __contains__(self, decision_id: str) -> bool:
        return decision_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, decision_id: str) -> Decision | None:
        return self._by_id.get(decision_id)

    def of_type(self, type_: DecisionType) -> list[Decision]:
        return [d for d in self._by_id.values() if d.type == type_]

    def all(self) -> list[Decision]:
        return list(self._by_id.values())


def load_catalog(path: str | Path | None) -> DecisionCatalog:
    """Load decisions from YAML, or the defaults when no path is given.

    Expected shape::

        decisions:
          - id: MER-PROVIMENTO
            type: MERITO
            identifier: Provimento
    """
    if not path:
        return DecisionCatalog()
    parsed = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(parsed, dict) or not isinstance(parsed.get("decisions"), list):
        raise ValueError(f"Invalid decision catalog {path}: expected a 'decisions' list")

    decisions = []
    for entry in parsed["decisions"]:
        decisions.append(Decision(
            id=str(entry["id"]),
            type=DecisionType(entry["type"]),
            identifier=entry.get("identifier", str(entry["id"])),
            accept_text=entry.get("accept_text", ""),
            reject_text=entry.get("reject_text", ""),
        ))
    return DecisionCatalog(decisions)
