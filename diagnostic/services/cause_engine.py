"""
Cause Classifier - resolves the primary root cause of a detected gap.

The scoring is pure integer arithmetic over the cause catalog:

    1. every weight rule adds ``map.get(answer, 0)`` to its cause when the
       question was answered;
    2. non-positive causes are discarded, the rest sorted descending
       (stable, so catalog order survives ties);
    3. primary = first ``tie_breaker`` cause among those tied at the top,
       else the first tied cause;
    4. secondary = runner-up only when within 1 point of the top;
    5. evidence lists every cause question with the literal answer.

No cause scoring above zero means the gap stays unclassified: a cause is
never guessed.

Persistence is first-writer-wins: the ``(assessment_id, gap_id)`` unique
constraint decides races and the loser reads the winner's record.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from diagnostic.models import db
from diagnostic.models.assessment import Assessment, CauseAnswer, GapCauseRecord
from diagnostic.services.catalog_service import GapDefinition

logger = logging.getLogger(__name__)

# Maximum distance from the top score for a runner-up to count as secondary
SECONDARY_MAX_GAP = 1


@dataclass
class CauseResult:
    """Outcome of scoring one gap's cause answers."""

    scores: dict[str, int]
    primary: str | None
    secondary: str | None
    evidence: list[dict] = field(default_factory=list)

    @property
    def classified(self) -> bool:
        return self.primary is not None

    def to_dict(self) -> dict:
        return {
            "scores": dict(self.scores),
            "primary": self.primary,
            "secondary": self.secondary,
            "evidence": list(self.evidence),
        }


def score_cause(gap: GapDefinition, answers: dict[str, str]) -> CauseResult:
    """Score a gap's causes from ``{q_id: likert_answer}``.  Pure."""
    scores: dict[str, int] = {}
    for rule in gap.weights:
        answer = answers.get(rule.q_id)
        if answer is None:
            continue
        scores[rule.cause_id] = scores.get(rule.cause_id, 0) + int(rule.points.get(answer, 0))

    ranked = sorted(
        ((cause_id, pts) for cause_id, pts in scores.items() if pts > 0),
        key=lambda kv: kv[1],
        reverse=True,
    )

    evidence = [
        {"q_id": q.q_id, "answer": answers.get(q.q_id), "prompt": q.prompt}
        for q in gap.cause_questions
    ]

    if not ranked:
        return CauseResult(scores=scores, primary=None, secondary=None, evidence=evidence)

    top = ranked[0][1]
    candidates = [cause_id for cause_id, pts in ranked if pts == top]
    primary = next((c for c in gap.tie_breaker if c in candidates), candidates[0])

    secondary = None
    runners_up = [(c, pts) for c, pts in ranked if c != primary]
    if runners_up and top - runners_up[0][1] <= SECONDARY_MAX_GAP:
        secondary = runners_up[0][0]

    return CauseResult(scores=scores, primary=primary, secondary=secondary, evidence=evidence)


def missing_cause_answers(gap: GapDefinition, answers: dict[str, str]) -> list[str]:
    """Cause question ids of *gap* without an answer, in catalog order."""
    return [qid for qid in gap.question_ids if not answers.get(qid)]


# ── Persistence ──────────────────────────────────────────────────────────────


def load_cause_answers(assessment_id: str, gap_id: str) -> dict[str, str]:
    rows = db.session.execute(
        select(CauseAnswer).where(
            CauseAnswer.assessment_id == assessment_id,
            CauseAnswer.gap_id == gap_id,
        )
    ).scalars().all()
    return {r.q_id: r.answer for r in rows}


def get_cause_record(assessment_id: str, gap_id: str) -> GapCauseRecord | None:
    return db.session.execute(
        select(GapCauseRecord).where(
            GapCauseRecord.assessment_id == assessment_id,
            GapCauseRecord.gap_id == gap_id,
        )
    ).scalar_one_or_none()


def persist_classification(
    assessment: Assessment,
    gap: GapDefinition,
    result: CauseResult,
    *,
    catalog_version: str,
    actor: str | None = None,
) -> tuple[GapCauseRecord, bool]:
    """
    Insert the classification once.  Returns ``(record, created)``.

    A concurrent writer that got there first wins: the unique-constraint
    violation is rolled back to the savepoint and the stored record is
    returned with ``created=False``.  Nothing is committed here.
    """
    if not result.classified:
        raise ValueError("cannot persist an unclassified result")

    existing = get_cause_record(assessment.id, gap.gap_id)
    if existing is not None:
        return existing, False

    record = GapCauseRecord(
        assessment_id=assessment.id,
        gap_id=gap.gap_id,
        cause_primary=result.primary,
        cause_secondary=result.secondary,
        evidence_json=json.dumps(result.evidence, ensure_ascii=False),
        score_json=json.dumps(result.scores),
        catalog_version=catalog_version,
        created_by=actor,
    )
    try:
        with db.session.begin_nested():
            db.session.add(record)
    except IntegrityError:
        logger.info("Gap %s already classified by a concurrent request", gap.gap_id,
                    extra={"assessment_id": assessment.id, "gap_id": gap.gap_id})
        winner = get_cause_record(assessment.id, gap.gap_id)
        if winner is None:
            raise
        return winner, False
    return record, True
