"""
Assessment API tests: creation, answers, submit, causes.

Baseline (``submitted`` fixture): ADM_FIN answered all 1 → LOW with gap
GAP_CAIXA_PREVISAO pending; COMERCIAL, OPERACOES, GESTAO all 9 → HIGH.
"""

import pytest
from sqlalchemy import func, select

from diagnostic.models import db
from diagnostic.models.assessment import (
    Finding,
    GapCauseRecord,
    GapInstance,
    GeneratedRecommendation,
    ProcessScore,
)
from diagnostic.models.audit import ValueEvent
from diagnostic.models.snapshot import DiagnosticSnapshot
from diagnostic.services import assessment_lifecycle, cause_engine
from diagnostic.services.snapshot_service import SnapshotService

BASE = "/api/v1/diagnostic"
COMPANY = "acme-ltda"


def _url(path):
    sep = "&" if "?" in path else "?"
    return f"{BASE}{path}{sep}company_id={COMPANY}"


def _count(model, assessment_id):
    return db.session.execute(
        select(func.count()).select_from(model).where(model.assessment_id == assessment_id)
    ).scalar()


# ═════════════════════════════════════════════════════════════════════════════
# Creation & answers
# ═════════════════════════════════════════════════════════════════════════════


def test_start_assessment_creates_draft_v1(assessment):
    assert assessment["status"] == "DRAFT"
    assert assessment["full_version"] == 1
    assert assessment["cycle_no"] == 1
    assert assessment["created"] is True


def test_start_assessment_returns_current(client, assessment):
    res = client.post(_url("/assessments"), json={})
    assert res.status_code == 200
    assert res.get_json()["id"] == assessment["id"]


def test_company_id_is_required(client):
    res = client.post(f"{BASE}/assessments", json={})
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


def test_invalid_segment_rejected(client):
    res = client.post(_url("/assessments"), json={"segment": "X"})
    assert res.status_code == 400


def test_other_company_gets_404(client, assessment):
    res = client.get(f"{BASE}/assessments/{assessment['id']}?company_id=outra")
    assert res.status_code == 404
    assert res.get_json()["code"] == "NOT_FOUND"


def test_save_answers_clamps_values(client, assessment):
    res = client.put(_url(f"/assessments/{assessment['id']}/answers"), json={"answers": [
        {"process_key": "COMERCIAL", "question_key": "Q01", "answer_value": 14},
        {"process_key": "COMERCIAL", "question_key": "Q02", "answer_value": -2},
    ]})
    assert res.status_code == 200
    values = {a["question_key"]: a["answer_value"] for a in res.get_json()["items"]}
    assert values == {"Q01": 10, "Q02": 0}


def test_save_answers_upserts(client, assessment):
    url = _url(f"/assessments/{assessment['id']}/answers")
    item = {"process_key": "GESTAO", "question_key": "Q05"}
    client.put(url, json={"answers": [{**item, "answer_value": 3}]})
    res = client.put(url, json={"answers": [{**item, "answer_value": 8}]})
    assert res.get_json()["items"] == [{**item, "answer_value": 8}]


def test_unknown_question_rejected(client, assessment):
    res = client.put(_url(f"/assessments/{assessment['id']}/answers"), json={"answers": [
        {"process_key": "COMERCIAL", "question_key": "Q99", "answer_value": 5},
    ]})
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_ANSWER"


# ═════════════════════════════════════════════════════════════════════════════
# Submit
# ═════════════════════════════════════════════════════════════════════════════


def test_submit_without_answers_lists_every_process(client, assessment):
    res = client.post(_url(f"/assessments/{assessment['id']}/submit"))
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "DIAG_INCOMPLETE"
    assert body["details"]["missing_process_keys"] == ["COMERCIAL", "OPERACOES", "ADM_FIN", "GESTAO"]
    assert body["details"]["answered_count"] == 0
    assert body["details"]["total_expected"] == 48


def test_submit_partial_answers_rejected(client, assessment):
    client.put(_url(f"/assessments/{assessment['id']}/answers"), json={"answers": [
        {"process_key": "COMERCIAL", "question_key": "Q01", "answer_value": 5},
    ]})
    res = client.post(_url(f"/assessments/{assessment['id']}/submit"))
    assert res.status_code == 422
    missing = res.get_json()["details"]["missing"][0]
    assert missing["process_key"] == "COMERCIAL"
    assert "Q01" not in missing["missing_question_keys"]

    res = client.get(_url(f"/assessments/{assessment['id']}"))
    assert res.get_json()["status"] == "DRAFT"


def test_submit_scores_and_bands(submitted):
    scores = {s["process_key"]: s for s in submitted["scores"]}
    assert scores["ADM_FIN"]["band"] == "LOW"
    assert scores["ADM_FIN"]["score_external"] == 10
    assert scores["COMERCIAL"]["band"] == "HIGH"
    assert scores["COMERCIAL"]["score_external"] == 90
    assert submitted["assessment"]["status"] == "SUBMITTED"
    assert submitted["pending_gaps"] == ["GAP_CAIXA_PREVISAO"]


def test_submit_recommendations_are_honest(submitted):
    recs = {r["process_key"]: r for r in submitted["recommendations"]}
    assert recs["ADM_FIN"]["gap_reason"] == "gap_not_classified"
    assert recs["ADM_FIN"]["title"] == "Conteúdo em definição pelo método"
    assert recs["GESTAO"]["no_content_reason"] == "no_catalog_item_for_band"
    assert recs["COMERCIAL"]["no_content_reason"] == "no_match_ge_2"
    for rec in recs.values():
        assert rec["is_fallback"] is True
        assert rec["action_keys"] == []


def test_submit_findings(submitted):
    leaks = submitted["findings"]["vazamentos"]
    assert [f["process_key"] for f in leaks] == ["ADM_FIN"]
    assert leaks[0]["title"] == "Caixa sem previsão confiável"
    assert submitted["findings"]["alavancas"] == []


def test_second_submit_conflicts(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.post(_url(f"/assessments/{aid}/submit"))
    assert res.status_code == 409
    assert res.get_json()["code"] == "DIAG_NOT_DRAFT"


def test_answers_frozen_after_submit(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.put(_url(f"/assessments/{aid}/answers"), json={"answers": [
        {"process_key": "COMERCIAL", "question_key": "Q01", "answer_value": 1},
    ]})
    assert res.status_code == 409


def test_snapshot_after_submit_has_empty_plan(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.get(_url(f"/assessments/{aid}/snapshot"))
    assert res.status_code == 200
    snap = res.get_json()
    assert snap["plan"] == []
    assert snap["evidence_summary"] == []
    assert len(snap["processes"]) == 4
    adm = next(p for p in snap["processes"] if p["process_key"] == "ADM_FIN")
    assert adm["score_external"] == 10


def test_suggestions_require_submit(client, assessment):
    res = client.get(_url(f"/assessments/{assessment['id']}/suggestions"))
    assert res.status_code == 409
    assert res.get_json()["code"] == "DIAG_NOT_READY"


def test_suggestions_report_content_gaps(client, submitted):
    aid = submitted["assessment"]["id"]
    body = client.get(_url(f"/assessments/{aid}/suggestions")).get_json()
    keys = [s["action_key"] for s in body["suggestions"]]
    assert keys == ["ADM_FIN-PREVISAO_13_SEMANAS"]
    gaps = {g["process_key"]: g for g in body["content_gaps"]}
    assert gaps["GESTAO"]["reason"] == "no_catalog_item_for_band"
    assert gaps["GESTAO"]["code"] == "NO_CONTENT_MATCH"
    assert gaps["OPERACOES"]["reason"] == "no_match_ge_2"


# ═════════════════════════════════════════════════════════════════════════════
# Cause classification
# ═════════════════════════════════════════════════════════════════════════════

_RITUAL_ANSWERS = [
    {"q_id": "CX_Q1", "answer": "DISCORDO_PLENAMENTE"},
    {"q_id": "CX_Q2", "answer": "CONCORDO"},
    {"q_id": "CX_Q3", "answer": "CONCORDO"},
    {"q_id": "CX_Q4", "answer": "CONCORDO_PLENAMENTE"},
]


def test_pending_causes_lists_questions(client, submitted):
    aid = submitted["assessment"]["id"]
    items = client.get(_url(f"/assessments/{aid}/causes/pending")).get_json()["items"]
    assert [g["gap_id"] for g in items] == ["GAP_CAIXA_PREVISAO"]
    assert items[0]["missing_q_ids"] == ["CX_Q1", "CX_Q2", "CX_Q3", "CX_Q4"]


def test_classify_requires_every_answer(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.post(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify"),
                      json={"answers": _RITUAL_ANSWERS[:2]})
    assert res.status_code == 422
    assert res.get_json()["details"]["missing"] == ["CX_Q3", "CX_Q4"]


def test_classify_gap_and_rederive(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.post(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify"),
                      json={"answers": _RITUAL_ANSWERS})
    assert res.status_code == 201
    body = res.get_json()
    assert body["record"]["cause_primary"] == "CAUSE_RITUAL"
    assert body["record"]["cause_secondary"] is None
    assert body["record"]["catalog_version"] == "1.0.0"
    assert body["record"]["evidence"][0] == {
        "q_id": "CX_Q1", "answer": "DISCORDO_PLENAMENTE",
        "prompt": "Existe um dia fixo na semana para revisar o caixa.",
    }

    recs = client.get(_url(f"/assessments/{aid}/recommendations")).get_json()["items"]
    adm = next(r for r in recs if r["process_key"] == "ADM_FIN")
    assert adm["title"] == "Caixa sem previsão confiável"
    assert adm["is_fallback"] is False
    assert adm["action_keys"][0] == "ADM_FIN-ROTINA_CAIXA_SEMANAL"

    pending = client.get(_url(f"/assessments/{aid}/causes/pending")).get_json()["items"]
    assert pending == []


def test_classification_is_immutable(client, submitted):
    aid = submitted["assessment"]["id"]
    url = _url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify")
    client.post(url, json={"answers": _RITUAL_ANSWERS})

    res = client.post(url, json={"answers": [{"q_id": "CX_Q1", "answer": "CONCORDO"}]})
    assert res.status_code == 200
    body = res.get_json()
    assert body["already_classified"] is True
    assert body["record"]["cause_primary"] == "CAUSE_RITUAL"

    res = client.put(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/answers"),
                     json={"answers": {"CX_Q1": "CONCORDO"}})
    assert res.status_code == 409
    assert res.get_json()["code"] == "GAP_ALREADY_CLASSIFIED"


def test_all_agree_leaves_gap_pending(client, submitted):
    aid = submitted["assessment"]["id"]
    answers = {f"CX_Q{i}": "CONCORDO_PLENAMENTE" for i in range(1, 5)}
    res = client.post(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify"),
                      json={"answers": answers})
    assert res.status_code == 200
    assert res.get_json()["classified"] is False
    assert client.get(_url(f"/assessments/{aid}/causes")).get_json()["items"] == []


def test_classify_gap_not_detected(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.post(_url(f"/assessments/{aid}/causes/GAP_VENDAS_FUNIL/classify"), json={})
    assert res.status_code == 422
    assert res.get_json()["code"] == "GAP_NOT_PENDING"


def test_classify_unknown_gap(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.post(_url(f"/assessments/{aid}/causes/GAP_NADA/classify"), json={})
    assert res.status_code == 404


def test_invalid_likert_answer(client, submitted):
    aid = submitted["assessment"]["id"]
    res = client.put(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/answers"),
                     json={"answers": {"CX_Q1": "TALVEZ"}})
    assert res.status_code == 422
    assert res.get_json()["code"] == "INVALID_ANSWER"


def test_classify_waits_for_submit(client, assessment, fill_answers):
    aid = assessment["id"]
    url = _url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify")
    res = client.post(url, json={"answers": _RITUAL_ANSWERS})
    assert res.status_code == 422
    assert res.get_json()["code"] == "GAP_NOT_PENDING"
    assert _count(GapCauseRecord, aid) == 0

    # answers kept in DRAFT never classify a gap the diagnostic does not detect
    res = client.put(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/answers"),
                     json={"answers": _RITUAL_ANSWERS})
    assert res.status_code == 200
    fill_answers(aid)
    assert client.post(_url(f"/assessments/{aid}/submit")).status_code == 200

    assert _count(GapInstance, aid) == 0
    assert _count(GapCauseRecord, aid) == 0
    body = client.get(_url(f"/assessments/{aid}/suggestions")).get_json()
    assert [s for s in body["suggestions"] if s["source"] == "mechanism"] == []


def test_suggestions_skip_causes_of_undetected_gaps(client, submitted):
    aid = submitted["assessment"]["id"]
    db.session.add(GapCauseRecord(assessment_id=aid, gap_id="GAP_VENDAS_FUNIL",
                                  cause_primary="CAUSE_RITUAL", catalog_version="1.0.0"))
    db.session.commit()

    body = client.get(_url(f"/assessments/{aid}/suggestions")).get_json()
    assert [s.get("gap_id") for s in body["suggestions"] if s["source"] == "mechanism"] == []


# ═════════════════════════════════════════════════════════════════════════════
# Atomicity & concurrent writers
# ═════════════════════════════════════════════════════════════════════════════


def test_failed_submit_writes_nothing(client, assessment, fill_answers, monkeypatch):
    aid = assessment["id"]
    client.put(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/answers"),
               json={"answers": _RITUAL_ANSWERS})
    fill_answers(aid, {"ADM_FIN": 1})

    def broken_capture(*args, **kwargs):
        raise RuntimeError("snapshot store unavailable")

    monkeypatch.setattr(SnapshotService, "capture_on_submit", broken_capture)
    with pytest.raises(RuntimeError):
        assessment_lifecycle.submit_assessment(assessment_lifecycle.get_assessment(aid))

    assert assessment_lifecycle.get_assessment(aid).status == "DRAFT"
    for model in (ProcessScore, GapInstance, GapCauseRecord, Finding,
                  GeneratedRecommendation, DiagnosticSnapshot):
        assert _count(model, aid) == 0, model.__name__

    monkeypatch.undo()
    res = client.post(_url(f"/assessments/{aid}/submit"))
    assert res.status_code == 200
    assert _count(GapCauseRecord, aid) == 1


def test_concurrent_classification_keeps_first_record(client, submitted, monkeypatch):
    aid = submitted["assessment"]["id"]
    db.session.add(GapCauseRecord(assessment_id=aid, gap_id="GAP_CAIXA_PREVISAO",
                                  cause_primary="CAUSE_DONO", catalog_version="1.0.0"))
    db.session.commit()

    # the other writer commits after both of this request's lookups
    real_lookup = cause_engine.get_cause_record
    lookups = []

    def late_lookup(assessment_id, gap_id):
        lookups.append(gap_id)
        return None if len(lookups) == 1 else real_lookup(assessment_id, gap_id)

    monkeypatch.setattr(assessment_lifecycle, "get_cause_record", lambda *a: None)
    monkeypatch.setattr(cause_engine, "get_cause_record", late_lookup)

    res = client.post(_url(f"/assessments/{aid}/causes/GAP_CAIXA_PREVISAO/classify"),
                      json={"answers": _RITUAL_ANSWERS})
    assert res.status_code == 200
    body = res.get_json()
    assert body["already_classified"] is True
    assert body["record"]["cause_primary"] == "CAUSE_DONO"

    monkeypatch.undo()
    assert _count(GapCauseRecord, aid) == 1
    events = db.session.execute(
        select(ValueEvent.event).where(ValueEvent.assessment_id == aid)
    ).scalars().all()
    assert "CAUSE_CLASSIFIED" not in events
