"""
Raio-x findings builder.

    vazamentos (leaks):   LOW processes, highest typical impact first, then
                          lowest score; top 3
    alavancas (levers):   MEDIUM processes, then LOW processes not already
                          listed as leaks; quick wins first, then lowest
                          score; top 3

Titles come from the catalog only: the gap's client title, else the derived
recommendation's title, else the fixed fallback title flagged ``is_fallback``.
"""

from __future__ import annotations

from diagnostic.services.catalog_service import (
    CauseCatalog,
    QuestionCatalog,
)
from diagnostic.services.recommendation_service import FALLBACK_TITLE

MAX_FINDINGS = 3

_IMPACT_ORDER = {"ALTO": 0, "MEDIO": 1, "BAIXO": 2}


def _title_for(score: dict, recs_by_process: dict[str, dict],
               causes: CauseCatalog) -> tuple[str, bool]:
    gap = causes.gap_for(score["process_key"], score["band"])
    if gap is not None:
        return gap.client_title, False
    rec = recs_by_process.get(score["process_key"])
    if rec and not rec.get("is_fallback"):
        return rec["title"], False
    return FALLBACK_TITLE, True


def _entry(position: int, score: dict, recs_by_process, causes, questions) -> dict:
    title, is_fallback = _title_for(score, recs_by_process, causes)
    proc = questions.process(score["process_key"])
    return {
        "position": position,
        "process_key": score["process_key"],
        "band": score["band"],
        "score": score["score"],
        "title": title,
        "is_fallback": is_fallback,
        "owner_alert_text": proc.owner_alert_text if proc else "",
        "typical_impact_text": proc.typical_impact_text if proc else "",
    }


def build_findings(
    scores: list[dict],
    recommendations: list[dict],
    *,
    questions: QuestionCatalog,
    causes: CauseCatalog,
) -> dict[str, list[dict]]:
    """Build ``{"vazamentos": [...], "alavancas": [...]}`` from process scores.

    ``scores`` items are ``{process_key, band, score}``; ``recommendations``
    are derived recommendation dicts (first one per process is used).
    """
    recs_by_process: dict[str, dict] = {}
    for rec in recommendations:
        recs_by_process.setdefault(rec["process_key"], rec)

    def impact(s: dict) -> int:
        proc = questions.process(s["process_key"])
        return _IMPACT_ORDER.get(proc.typical_impact_band if proc else "", len(_IMPACT_ORDER))

    def quick_win(s: dict) -> int:
        proc = questions.process(s["process_key"])
        return 0 if proc and proc.quick_win else 1

    low = sorted((s for s in scores if s["band"] == "LOW"),
                 key=lambda s: (impact(s), s["score"], s["process_key"]))
    leaks = low[:MAX_FINDINGS]
    leak_keys = {s["process_key"] for s in leaks}

    medium = sorted((s for s in scores if s["band"] == "MEDIUM"),
                    key=lambda s: (quick_win(s), s["score"], s["process_key"]))
    extra_low = [s for s in low if s["process_key"] not in leak_keys]
    levers = (medium + extra_low)[:MAX_FINDINGS]

    return {
        "vazamentos": [
            _entry(i, s, recs_by_process, causes, questions) for i, s in enumerate(leaks, start=1)
        ],
        "alavancas": [
            _entry(i, s, recs_by_process, causes, questions) for i, s in enumerate(levers, start=1)
        ],
    }
