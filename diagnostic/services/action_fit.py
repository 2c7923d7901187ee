"""
Action Fit Matcher - picks the best catalog action for a process.

A *signal* is ``{process_key}_{question_key}``; it has *failed* when the
answer is at or below ``SIGNAL_FAIL_THRESHOLD``.  Candidates are the
catalog items of the process's band; an item qualifies with at least
``MIN_MATCH`` of its required signals failed.  Highest match count wins,
ties go to catalog order.

The result is a tagged union, never a placeholder:

    FitMatch(kind="match", action, match_count, matched_signals)
    FitNone(kind="none", reason)

with reasons ``no_score``, ``no_catalog_item_for_band``, ``no_match_ge_2``
and ``action_already_used``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Union

from diagnostic.services.catalog_service import ActionCatalog, CatalogAction, signal_id

SIGNAL_FAIL_THRESHOLD = 2   # inclusive
MIN_MATCH = 2

NO_SCORE = "no_score"
NO_CATALOG_ITEM_FOR_BAND = "no_catalog_item_for_band"
NO_MATCH_GE_2 = "no_match_ge_2"
ACTION_ALREADY_USED = "action_already_used"

NO_CONTENT_REASONS = frozenset({NO_SCORE, NO_CATALOG_ITEM_FOR_BAND, NO_MATCH_GE_2, ACTION_ALREADY_USED})


@dataclass(frozen=True)
class FitMatch:
    action: CatalogAction
    match_count: int
    matched_signals: tuple[str, ...]
    kind: Literal["match"] = "match"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "process_key": self.action.process_key,
            "band": self.action.band,
            "action": self.action.to_dict(),
            "match_count": self.match_count,
            "matched_signals": list(self.matched_signals),
        }


@dataclass(frozen=True)
class FitNone:
    reason: str
    process_key: str | None = None
    band: str | None = None
    kind: Literal["none"] = "none"
    details: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "process_key": self.process_key,
            "band": self.band,
            "reason": self.reason,
            "code": "NO_CONTENT_MATCH",
            **({"details": self.details} if self.details else {}),
        }


FitResult = Union[FitMatch, FitNone]


def build_failed_signals(process_key: str, answers: dict[str, int | None]) -> frozenset[str]:
    """Failed signal ids of one process from ``{question_key: value}``."""
    return frozenset(
        signal_id(process_key, qk)
        for qk, value in answers.items()
        if value is not None and value <= SIGNAL_FAIL_THRESHOLD
    )


def match_action(
    catalog: ActionCatalog,
    process_key: str,
    band: str | None,
    failed_signals: Iterable[str],
    excluded_action_keys: Iterable[str] = (),
) -> FitResult:
    """Best-fit catalog action for a process/band.  Deterministic."""
    if band is None:
        return FitNone(reason=NO_SCORE, process_key=process_key)

    candidates = catalog.items_for(process_key, band)
    if not candidates:
        return FitNone(reason=NO_CATALOG_ITEM_FOR_BAND, process_key=process_key, band=band)

    failed = frozenset(failed_signals)
    best: CatalogAction | None = None
    best_matched: tuple[str, ...] = ()
    for item in candidates:
        matched = tuple(s for s in item.required_signals if s in failed)
        if len(matched) < MIN_MATCH:
            continue
        # strictly greater: first item in catalog order wins ties
        if best is None or len(matched) > len(best_matched):
            best, best_matched = item, matched

    if best is None:
        return FitNone(reason=NO_MATCH_GE_2, process_key=process_key, band=band,
                       details={"failed_signal_count": len(failed)})

    if best.action_key in set(excluded_action_keys):
        return FitNone(reason=ACTION_ALREADY_USED, process_key=process_key, band=band,
                       details={"action_key": best.action_key})

    return FitMatch(action=best, match_count=len(best_matched), matched_signals=best_matched)
