"""
tier_budgets.py
===============

Subscription tier budgets. A plan id resolves to exactly one TierBudget;
unknown plans are an error, never a silent default.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping


class BudgetNotFoundError(LookupError):
    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Subscription plan '{plan_id}' has no rigging budget")


@dataclass(frozen=True)
class TierBudget:
    max_bones: int
    max_morph_targets: int
    max_file_size_mb: float

    def __post_init__(self) -> None:
        if self.max_bones < 1:
            raise ValueError("max_bones must be >= 1")
        if self.max_morph_targets < 0:
            raise ValueError("max_morph_targets must be >= 0")
        if self.max_file_size_mb <= 0:
            raise ValueError("max_file_size_mb must be > 0")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TierBudget":
        try:
            return cls(
                max_bones=int(raw["maxBones"]),
                max_morph_targets=int(raw["maxMorphTargets"]),
                max_file_size_mb=float(raw["maxFileSizeMB"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid tier budget entry: {raw!r}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxBones": self.max_bones,
            "maxMorphTargets": self.max_morph_targets,
            "maxFileSizeMB": self.max_file_size_mb,
        }


DEFAULT_TIER_BUDGETS: Dict[str, TierBudget] = {
    "free": TierBudget(max_bones=9, max_morph_targets=5, max_file_size_mb=25),
    "reply_guy": TierBudget(max_bones=15, max_morph_targets=12, max_file_size_mb=45),
    "spartan": TierBudget(max_bones=25, max_morph_targets=20, max_file_size_mb=65),
    "zeus": TierBudget(max_bones=45, max_morph_targets=35, max_file_size_mb=85),
    "goat": TierBudget(max_bones=65, max_morph_targets=50, max_file_size_mb=95),
}


class TierBudgetProvider:
    def lookup(self, plan_id: str) -> TierBudget:
        raise NotImplementedError


class StaticTierBudgetProvider(TierBudgetProvider):
    def __init__(self, budgets: Mapping[str, TierBudget]):
        self._budgets = dict(budgets)

    def lookup(self, plan_id: str) -> TierBudget:
        budget = self._budgets.get(plan_id)
        if budget is None:
            raise BudgetNotFoundError(plan_id)
        return budget

    def plans(self) -> list:
        return sorted(self._budgets)


def load_tier_budgets(path: Path) -> StaticTierBudgetProvider:
    """Load ``{plan: {maxBones, maxMorphTargets, maxFileSizeMB}}`` from a JSON file."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Tier budget file must hold a JSON object: {path}")

    budgets = {}
    for plan_id, entry in raw.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Tier budget for '{plan_id}' is not an object")
        budgets[str(plan_id)] = TierBudget.from_dict(entry)
    return StaticTierBudgetProvider(budgets)


def default_tier_provider() -> StaticTierBudgetProvider:
    return StaticTierBudgetProvider(DEFAULT_TIER_BUDGETS)
