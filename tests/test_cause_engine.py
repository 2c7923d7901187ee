"""
Cause Classifier scoring tests (pure, no database).

Covers:
    - weights summed per cause from Likert answers
    - tie-break follows the gap's tie_breaker order
    - secondary cause only within 1 point of the primary
    - no positive score → unclassified, never guessed
    - evidence lists every cause question with the literal answer
"""

from diagnostic.services.catalog_service import (
    CauseQuestion,
    GapDefinition,
    MechanismAction,
    WeightRule,
)
from diagnostic.services.cause_engine import missing_cause_answers, score_cause

_LIKERT = ("DISCORDO_PLENAMENTE", "DISCORDO", "NEUTRO", "CONCORDO", "CONCORDO_PLENAMENTE")
_MAP = {"DISCORDO_PLENAMENTE": 3, "DISCORDO": 2, "NEUTRO": 1}


def _gap(tie_breaker=("CAUSE_B", "CAUSE_A"), extra_weights=()):
    return GapDefinition(
        gap_id="GAP_TESTE",
        process_key="GESTAO",
        band="LOW",
        client_title="Gap de teste",
        client_description="",
        cause_questions=(
            CauseQuestion("Q_A", "Pergunta A", "LIKERT_5", _LIKERT),
            CauseQuestion("Q_B", "Pergunta B", "LIKERT_5", _LIKERT),
        ),
        weights=(
            WeightRule("CAUSE_A", "Q_A", dict(_MAP)),
            WeightRule("CAUSE_B", "Q_B", dict(_MAP)),
            *extra_weights,
        ),
        tie_breaker=tuple(tie_breaker),
        mechanism_actions=(
            MechanismAction("CAUSE_A", "ACAO_A", "Ação A", "porque", "passo", 1),
        ),
    )


def test_tie_break_prefers_tie_breaker_order():
    result = score_cause(_gap(), {"Q_A": "DISCORDO_PLENAMENTE", "Q_B": "DISCORDO_PLENAMENTE"})
    assert result.scores == {"CAUSE_A": 3, "CAUSE_B": 3}
    assert result.primary == "CAUSE_B"
    assert result.secondary == "CAUSE_A"


def test_tie_break_falls_back_to_first_tied_cause():
    result = score_cause(_gap(tie_breaker=()),
                         {"Q_A": "DISCORDO_PLENAMENTE", "Q_B": "DISCORDO_PLENAMENTE"})
    assert result.primary == "CAUSE_A"


def test_secondary_within_one_point():
    extra = (WeightRule("CAUSE_A", "Q_B", {"DISCORDO_PLENAMENTE": 2}),)
    # A = 3 + 2 = 5, B = 3 + 1 = 4
    gap = _gap(extra_weights=extra + (WeightRule("CAUSE_B", "Q_A", {"DISCORDO_PLENAMENTE": 1}),))
    result = score_cause(gap, {"Q_A": "DISCORDO_PLENAMENTE", "Q_B": "DISCORDO_PLENAMENTE"})
    assert result.scores == {"CAUSE_A": 5, "CAUSE_B": 4}
    assert result.primary == "CAUSE_A"
    assert result.secondary == "CAUSE_B"


def test_no_secondary_when_two_points_behind():
    extra = (WeightRule("CAUSE_A", "Q_B", {"DISCORDO_PLENAMENTE": 2}),)
    # A = 5, B = 3
    result = score_cause(_gap(extra_weights=extra),
                         {"Q_A": "DISCORDO_PLENAMENTE", "Q_B": "DISCORDO_PLENAMENTE"})
    assert result.scores == {"CAUSE_A": 5, "CAUSE_B": 3}
    assert result.primary == "CAUSE_A"
    assert result.secondary is None


def test_all_agree_is_unclassified():
    result = score_cause(_gap(), {"Q_A": "CONCORDO", "Q_B": "CONCORDO_PLENAMENTE"})
    assert result.primary is None
    assert result.secondary is None
    assert not result.classified


def test_evidence_echoes_literal_answers():
    result = score_cause(_gap(), {"Q_A": "NEUTRO", "Q_B": "CONCORDO"})
    assert result.evidence == [
        {"q_id": "Q_A", "answer": "NEUTRO", "prompt": "Pergunta A"},
        {"q_id": "Q_B", "answer": "CONCORDO", "prompt": "Pergunta B"},
    ]
    assert result.primary == "CAUSE_A"


def test_scoring_is_deterministic():
    answers = {"Q_A": "DISCORDO", "Q_B": "DISCORDO"}
    results = {score_cause(_gap(), answers).primary for _ in range(20)}
    assert results == {"CAUSE_B"}


def test_missing_cause_answers_in_catalog_order():
    assert missing_cause_answers(_gap(), {"Q_B": "NEUTRO"}) == ["Q_A"]
    assert missing_cause_answers(_gap(), {"Q_A": "NEUTRO", "Q_B": "NEUTRO"}) == []


def test_packaged_gap_dono_secondary(catalogs):
    gap = catalogs["causes"].get_gap("GAP_CAIXA_PREVISAO")
    result = score_cause(gap, {
        "CX_Q1": "NEUTRO",      # RITUAL 1
        "CX_Q2": "DISCORDO",    # DONO 2
        "CX_Q3": "CONCORDO",
        "CX_Q4": "CONCORDO",
    })
    assert result.primary == "CAUSE_DONO"
    assert result.secondary == "CAUSE_RITUAL"
