"""
Recommendation Deriver - one recommendation per scored process.

Resolution order for each ``ProcessScore``:

    1. the band maps to a catalog gap
         classified   → gap client title + the cause's mechanism actions
                        (max 3, ``sort_order``); key ``gap-{gap}-{cause}``
         unclassified → honest fallback: ``gap_not_classified``, title
                        "Conteúdo em definição pelo método", no actions
    2. otherwise the Action Fit Matcher
         match        → item recommendation title + its action; key = item id
         none         → fallback "catálogo vazio para processo/banda" plus the
                        matcher's machine reason

Rows are upserted by ``(assessment_id, process_key, recommendation_key)`` and
stale keys of the same process are removed, so re-deriving is idempotent.
Nothing is committed here; callers own the transaction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from diagnostic.core.exceptions import StateConflictError
from diagnostic.models import db
from diagnostic.models.assessment import (
    Answer,
    Assessment,
    GapCauseRecord,
    GapInstance,
    GeneratedRecommendation,
    ProcessScore,
)
from diagnostic.models.plan import CycleHistory, PlanSlot
from diagnostic.services import catalog_service
from diagnostic.services.action_fit import FitMatch, build_failed_signals, match_action
from diagnostic.utils.errors import E

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "Conteúdo em definição pelo método"
GAP_NOT_CLASSIFIED = "gap_not_classified"
CATALOG_EMPTY_REASON = "catálogo vazio para processo/banda"
MAX_MECHANISM_ACTIONS = 3


@dataclass
class DerivedRecommendation:
    process_key: str
    band: str
    recommendation_key: str
    title: str
    action_keys: list[str] = field(default_factory=list)
    is_fallback: bool = False
    gap_reason: str | None = None
    no_content_reason: str | None = None
    gap_id: str | None = None
    cause_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "process_key": self.process_key,
            "band": self.band,
            "recommendation_key": self.recommendation_key,
            "title": self.title,
            "action_keys": list(self.action_keys),
            "is_fallback": self.is_fallback,
            "gap_reason": self.gap_reason,
            "no_content_reason": self.no_content_reason,
            "gap_id": self.gap_id,
            "cause_id": self.cause_id,
        }


# ── Reads ────────────────────────────────────────────────────────────────────


def answers_by_process(assessment_id: str) -> dict[str, dict[str, int]]:
    """``{process_key: {question_key: value}}`` for one assessment."""
    rows = db.session.execute(
        select(Answer).where(Answer.assessment_id == assessment_id)
    ).scalars().all()
    grouped: dict[str, dict[str, int]] = {}
    for row in rows:
        grouped.setdefault(row.process_key, {})[row.question_key] = row.answer_value
    return grouped


def _scores(assessment_id: str) -> dict[str, ProcessScore]:
    rows = db.session.execute(
        select(ProcessScore).where(ProcessScore.assessment_id == assessment_id)
    ).scalars().all()
    return {r.process_key: r for r in rows}


def _cause_records(assessment_id: str) -> dict[str, GapCauseRecord]:
    rows = db.session.execute(
        select(GapCauseRecord).where(GapCauseRecord.assessment_id == assessment_id)
    ).scalars().all()
    return {r.gap_id: r for r in rows}


def _detected_gap_ids(assessment_id: str) -> set[str]:
    return set(db.session.execute(
        select(GapInstance.gap_id).where(GapInstance.assessment_id == assessment_id)
    ).scalars().all())


def used_action_keys(assessment_id: str) -> set[str]:
    """Action keys in the current plan or in any archived cycle."""
    current = db.session.execute(
        select(PlanSlot.action_key).where(PlanSlot.assessment_id == assessment_id)
    ).scalars().all()
    archived = db.session.execute(
        select(CycleHistory.action_key).where(CycleHistory.assessment_id == assessment_id)
    ).scalars().all()
    return set(current) | set(archived)


# ── Derivation ───────────────────────────────────────────────────────────────


def derive_for_process(
    process_key: str,
    band: str,
    process_answers: dict[str, int],
    cause_records: dict[str, GapCauseRecord],
) -> DerivedRecommendation:
    """Derive the recommendation of one process/band."""
    gap = catalog_service.gap_for(process_key, band)
    if gap is not None:
        record = cause_records.get(gap.gap_id)
        if record is None:
            return DerivedRecommendation(
                process_key=process_key,
                band=band,
                recommendation_key=f"fallback-{process_key}-{band}",
                title=FALLBACK_TITLE,
                is_fallback=True,
                gap_reason=GAP_NOT_CLASSIFIED,
                gap_id=gap.gap_id,
            )
        mechanisms = gap.mechanism_actions_for(record.cause_primary, limit=MAX_MECHANISM_ACTIONS)
        return DerivedRecommendation(
            process_key=process_key,
            band=band,
            recommendation_key=f"gap-{gap.gap_id}-{record.cause_primary}",
            title=gap.client_title,
            action_keys=[m.action_key for m in mechanisms],
            gap_id=gap.gap_id,
            cause_id=record.cause_primary,
        )

    fit = match_action(
        catalog_service.get_action_catalog(),
        process_key,
        band,
        build_failed_signals(process_key, process_answers),
    )
    if isinstance(fit, FitMatch):
        return DerivedRecommendation(
            process_key=process_key,
            band=band,
            recommendation_key=fit.action.item_id or fit.action.action_key,
            title=fit.action.recommendation.title if fit.action.recommendation else fit.action.title,
            action_keys=[fit.action.action_key],
        )
    return DerivedRecommendation(
        process_key=process_key,
        band=band,
        recommendation_key=f"fallback-{process_key}-{band}",
        title=FALLBACK_TITLE,
        is_fallback=True,
        gap_reason=CATALOG_EMPTY_REASON,
        no_content_reason=fit.reason,
    )


def derive_recommendations(assessment: Assessment) -> list[DerivedRecommendation]:
    """Derive every recommendation of an assessment from its stored scores."""
    answers = answers_by_process(assessment.id)
    records = _cause_records(assessment.id)
    return [
        derive_for_process(score.process_key, score.band, answers.get(score.process_key, {}), records)
        for score in sorted(_scores(assessment.id).values(), key=lambda s: s.process_key)
    ]


def derive_and_persist_recommendations(assessment: Assessment) -> list[dict]:
    """Upsert derived recommendations and prune stale keys.  Flushes, no commit."""
    derived = derive_recommendations(assessment)
    existing = db.session.execute(
        select(GeneratedRecommendation).where(GeneratedRecommendation.assessment_id == assessment.id)
    ).scalars().all()
    by_key = {(r.process_key, r.recommendation_key): r for r in existing}

    keep: set[tuple[str, str]] = set()
    for rec in derived:
        key = (rec.process_key, rec.recommendation_key)
        keep.add(key)
        row = by_key.get(key)
        if row is None:
            row = GeneratedRecommendation(
                assessment_id=assessment.id,
                process_key=rec.process_key,
                recommendation_key=rec.recommendation_key,
            )
            db.session.add(row)
        row.band = rec.band
        row.title = rec.title
        row.action_keys_json = json.dumps(rec.action_keys)
        row.is_fallback = rec.is_fallback
        row.gap_reason = rec.gap_reason
        row.no_content_reason = rec.no_content_reason
        row.gap_id = rec.gap_id
        row.cause_id = rec.cause_id

    for key, row in by_key.items():
        if key not in keep:
            db.session.delete(row)

    db.session.flush()
    fallbacks = [r.process_key for r in derived if r.is_fallback]
    if fallbacks:
        logger.info("Recommendations without catalog content: %s", ", ".join(fallbacks),
                    extra={"assessment_id": assessment.id, "event_type": "content_gap"})
    return [r.to_dict() for r in derived]


def list_recommendations(assessment: Assessment) -> list[dict]:
    rows = db.session.execute(
        select(GeneratedRecommendation)
        .where(GeneratedRecommendation.assessment_id == assessment.id)
        .order_by(GeneratedRecommendation.process_key)
    ).scalars().all()
    return [r.to_dict() for r in rows]


# ── Suggestions ──────────────────────────────────────────────────────────────


def get_suggested_actions(assessment: Assessment) -> dict:
    """
    Actions the company can still pick for its plan.

    Mechanism actions of classified gaps come first, then the best fit per
    process.  Actions already in the plan or in archived cycles are left
    out.  Processes without content appear in ``content_gaps`` with a
    machine reason; nothing is substituted for them.
    """
    if assessment.status == "DRAFT":
        raise StateConflictError("Submit the diagnostic before requesting suggestions",
                                 code=E.DIAG_NOT_READY)

    excluded = used_action_keys(assessment.id)
    answers = answers_by_process(assessment.id)
    scores = _scores(assessment.id)
    catalog = catalog_service.get_action_catalog()

    suggestions: list[dict] = []
    seen: set[str] = set()

    detected = _detected_gap_ids(assessment.id)
    for gap_id, record in sorted(_cause_records(assessment.id).items()):
        gap = catalog_service.get_gap(gap_id)
        if gap is None or gap_id not in detected:
            continue
        for mech in gap.mechanism_actions_for(record.cause_primary, limit=MAX_MECHANISM_ACTIONS):
            if mech.action_key in excluded or mech.action_key in seen:
                continue
            seen.add(mech.action_key)
            suggestions.append({
                "source": "mechanism",
                "process_key": gap.process_key,
                "band": gap.band,
                "gap_id": gap.gap_id,
                "cause_id": record.cause_primary,
                "action_key": mech.action_key,
                "title": mech.title,
                "why": mech.why,
                "first_step": mech.first_step,
                "sort_order": mech.sort_order,
            })

    by_process: list[dict] = []
    for process_key in catalog_service.PROCESS_KEYS:
        score = scores.get(process_key)
        fit = match_action(
            catalog,
            process_key,
            score.band if score else None,
            build_failed_signals(process_key, answers.get(process_key, {})),
            excluded_action_keys=excluded,
        )
        by_process.append(fit.to_dict())
        if isinstance(fit, FitMatch) and fit.action.action_key not in seen:
            seen.add(fit.action.action_key)
            suggestions.append({
                "source": "fit",
                "process_key": process_key,
                "band": fit.action.band,
                "action_key": fit.action.action_key,
                "title": fit.action.title,
                "match_count": fit.match_count,
                "matched_signals": list(fit.matched_signals),
                "recommendation": fit.action.recommendation.to_dict() if fit.action.recommendation else None,
            })

    content_gaps = [r for r in by_process if r["kind"] == "none"]
    if content_gaps:
        logger.info("No content match for %d process(es)", len(content_gaps),
                    extra={"assessment_id": assessment.id, "event_type": "no_content_match"})

    return {
        "assessment_id": assessment.id,
        "cycle_no": assessment.cycle_no,
        "suggestions": suggestions,
        "by_process": by_process,
        "content_gaps": content_gaps,
        "excluded_action_keys": sorted(excluded),
        "remaining_count": len(suggestions),
    }
