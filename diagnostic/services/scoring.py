"""
Process scoring - turns 0–10 answers into a score and a maturity band.

Score: average of the process's answers, rounded to 2 decimals.

Band (dimension rule):
    - ROTINA, DONO or CONTROLE missing or below 5  → band from the score
      alone (``score_to_band``); a LOW here is reported as
      ``missing_or_weak_minimum``, otherwise ``fallback_score``
    - ROTINA, DONO, CONTROLE ≥ 8, EXISTENCIA ≥ 7 and score ≥ 7 → HIGH
    - anything else → MEDIUM
"""

from __future__ import annotations

from dataclasses import dataclass, field

from diagnostic.services.catalog_service import DIMENSIONS, Question

MIN_ANSWER = 0
MAX_ANSWER = 10

_MINIMUM_DIMENSIONS = ("ROTINA", "DONO", "CONTROLE")


def score_to_band(score: float) -> str:
    if score < 4:
        return "LOW"
    if score < 7:
        return "MEDIUM"
    return "HIGH"


def to_external_score(score: float | None) -> int | None:
    """Internal 0–10 score → the 0–100 scale shown to clients."""
    if score is None:
        return None
    return int(round(score * 10))


def clamp_answer(value) -> int:
    """Coerce an answer to an int in [0, 10].  Raises ValueError/TypeError."""
    number = int(round(float(value)))
    return max(MIN_ANSWER, min(MAX_ANSWER, number))


@dataclass
class ProcessScoreResult:
    process_key: str
    score: float
    band: str
    band_rule: str
    dimension_scores: dict[str, float | None] = field(default_factory=dict)
    answers: dict[str, int] = field(default_factory=dict)

    @property
    def support(self) -> dict:
        return {
            "answers": dict(self.answers),
            "dimension_scores": dict(self.dimension_scores),
            "band_rule": self.band_rule,
        }


def derive_band(score: float, dimension_scores: dict[str, float | None]) -> tuple[str, str]:
    """Return ``(band, rule)`` for a process."""
    minimums = [dimension_scores.get(d) for d in _MINIMUM_DIMENSIONS]
    if any(v is None or v < 5 for v in minimums):
        band = score_to_band(score)
        return band, "missing_or_weak_minimum" if band == "LOW" else "fallback_score"

    existencia = dimension_scores.get("EXISTENCIA")
    if all(v >= 8 for v in minimums) and existencia is not None and existencia >= 7 and score >= 7:
        return "HIGH", "all_minimum_strong"
    return "MEDIUM", "intermediate"


def compute_process_score(
    process_key: str,
    questions: list[Question],
    answers: dict[str, int],
) -> ProcessScoreResult:
    """Score one process from its questions and ``{question_key: value}``."""
    values = [answers[q.question_key] for q in questions if q.question_key in answers]
    score = round(sum(values) / len(values), 2) if values else 0.0

    by_dimension: dict[str, list[int]] = {d: [] for d in DIMENSIONS}
    for q in questions:
        if q.question_key in answers:
            by_dimension[q.dimension].append(answers[q.question_key])
    dimension_scores = {
        d: (round(sum(v) / len(v), 2) if v else None) for d, v in by_dimension.items()
    }

    band, rule = derive_band(score, dimension_scores)
    return ProcessScoreResult(
        process_key=process_key,
        score=score,
        band=band,
        band_rule=rule,
        dimension_scores=dimension_scores,
        answers={q.question_key: answers[q.question_key] for q in questions if q.question_key in answers},
    )
