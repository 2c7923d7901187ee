"""
Action plan, cycle close and new cycle API tests.

Plan used throughout (on top of the ``submitted`` baseline):
    1  ADM_FIN-PREVISAO_13_SEMANAS
    2  ADM_FIN-REGUA_COBRANCA
    3  COMERCIAL-FUNIL_SEMANAL
"""

import pytest
from sqlalchemy import func, select

from diagnostic.models import db
from diagnostic.models.plan import ActionEvidence, DodConfirmation
from diagnostic.services import assessment_lifecycle

BASE = "/api/v1/diagnostic"
COMPANY = "acme-ltda"

PREVISAO = "ADM_FIN-PREVISAO_13_SEMANAS"
REGUA = "ADM_FIN-REGUA_COBRANCA"
FUNIL = "COMERCIAL-FUNIL_SEMANAL"


def _url(path):
    sep = "&" if "?" in path else "?"
    return f"{BASE}{path}{sep}company_id={COMPANY}"


def _entry(action_key, position, **kw):
    data = {
        "action_key": action_key,
        "position": position,
        "owner_name": "Marina",
        "metric_text": "Semanas com previsão atualizada",
        "checkpoint_date": "2026-12-01",
    }
    data.update(kw)
    return data


def _plan_body(keys=(PREVISAO, REGUA, FUNIL)):
    return {"actions": [_entry(key, pos) for pos, key in enumerate(keys, start=1)]}


def _done_when(client, action_key):
    res = client.get(f"{BASE}/actions/{action_key}/dod")
    assert res.status_code == 200
    return res.get_json()["done_when"]


def _confirm_dod(client, aid, action_key):
    return client.post(_url(f"/assessments/{aid}/plan/{action_key}/dod"),
                       json={"confirmed_items": _done_when(client, action_key)})


def _evidence(client, aid, action_key, before="10 dias", after="2 dias"):
    return client.post(_url(f"/assessments/{aid}/plan/{action_key}/evidence"),
                       json={"before_baseline": before, "after_result": after})


def _status(client, aid, action_key, status, reason=None):
    body = {"status": status}
    if reason is not None:
        body["dropped_reason"] = reason
    return client.patch(_url(f"/assessments/{aid}/plan/{action_key}/status"), json=body)


@pytest.fixture()
def aid(submitted):
    return submitted["assessment"]["id"]


@pytest.fixture()
def planned(client, aid):
    res = client.post(_url(f"/assessments/{aid}/plan"), json=_plan_body())
    assert res.status_code == 200, res.get_json()
    return aid


def _finish_cycle(client, aid):
    """PREVISAO done with evidence, the other two dropped."""
    assert _confirm_dod(client, aid, PREVISAO).status_code == 201
    assert _evidence(client, aid, PREVISAO).status_code == 201
    assert _status(client, aid, PREVISAO, "DONE").status_code == 200
    assert _status(client, aid, REGUA, "DROPPED", "Sem equipe neste mês").status_code == 200
    assert _status(client, aid, FUNIL, "DROPPED", "Prioridade do caixa").status_code == 200


# ═════════════════════════════════════════════════════════════════════════════
# Plan selection
# ═════════════════════════════════════════════════════════════════════════════


class TestSelectPlan:
    def test_plan_requires_submit(self, client, assessment):
        res = client.post(_url(f"/assessments/{assessment['id']}/plan"), json=_plan_body())
        assert res.status_code == 409
        assert res.get_json()["code"] == "DIAG_NOT_READY"

    def test_select_plan(self, client, aid):
        res = client.post(_url(f"/assessments/{aid}/plan"), json=_plan_body())
        assert res.status_code == 200
        body = res.get_json()
        assert body["cycle_no"] == 1
        items = body["items"]
        assert [i["action_key"] for i in items] == [PREVISAO, REGUA, FUNIL]
        assert [i["position"] for i in items] == [1, 2, 3]
        assert all(i["status"] == "NOT_STARTED" for i in items)
        assert items[0]["checkpoint_date"].startswith("2026-12-01")
        assert items[0]["title"] == "Montar previsão de caixa de 13 semanas"
        assert items[0]["dod_confirmed"] is False
        assert items[0]["evidence"] is None

    def test_duplicate_positions_rejected(self, client, aid):
        body = {"actions": [_entry(PREVISAO, 1), _entry(REGUA, 1), _entry(FUNIL, 2)]}
        res = client.post(_url(f"/assessments/{aid}/plan"), json=body)
        assert res.status_code == 422
        assert res.get_json()["code"] == "PLAN_INVALID"

    def test_two_actions_rejected(self, client, aid):
        body = {"actions": [_entry(PREVISAO, 1), _entry(REGUA, 2)]}
        res = client.post(_url(f"/assessments/{aid}/plan"), json=body)
        assert res.status_code == 422
        assert res.get_json()["code"] == "PLAN_INVALID"

    def test_missing_owner_rejected(self, client, aid):
        body = {"actions": [_entry(PREVISAO, 1, owner_name=""), _entry(REGUA, 2), _entry(FUNIL, 3)]}
        res = client.post(_url(f"/assessments/{aid}/plan"), json=body)
        assert res.status_code == 422
        errors = res.get_json()["details"]["errors"]
        assert {"index": 0, "field": "owner_name", "error": "required"} in errors

    def test_unknown_action_rejected(self, client, aid):
        res = client.post(_url(f"/assessments/{aid}/plan"),
                          json=_plan_body((PREVISAO, REGUA, "COMERCIAL-INEXISTENTE")))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "UNKNOWN_ACTION"
        assert body["details"]["action_keys"] == ["COMERCIAL-INEXISTENTE"]

    def test_untouched_plan_can_be_replaced(self, client, planned):
        other = "ADM_FIN-MARGEM_PRODUTO"
        res = client.post(_url(f"/assessments/{planned}/plan"),
                          json=_plan_body((PREVISAO, REGUA, other)))
        assert res.status_code == 200
        assert [i["action_key"] for i in res.get_json()["items"]] == [PREVISAO, REGUA, other]

    def test_plan_with_progress_cannot_be_replaced(self, client, planned):
        assert _confirm_dod(client, planned, PREVISAO).status_code == 201
        res = client.post(_url(f"/assessments/{planned}/plan"), json=_plan_body())
        assert res.status_code == 409
        assert res.get_json()["code"] == "PLAN_IN_PROGRESS"


# ═════════════════════════════════════════════════════════════════════════════
# DoD, evidence, status
# ═════════════════════════════════════════════════════════════════════════════


class TestDefinitionOfDone:
    def test_action_dod_lists_checklist(self, client):
        res = client.get(f"{BASE}/actions/{PREVISAO}/dod")
        assert res.status_code == 200
        assert res.get_json()["done_when"] == [
            "Planilha de 13 semanas criada",
            "Quatro comparações semanais registradas",
            "Responsável nomeado",
        ]

    def test_unknown_action_dod_is_404(self, client):
        assert client.get(f"{BASE}/actions/NADA-NADA/dod").status_code == 404

    def test_partial_checklist_rejected(self, client, planned):
        items = _done_when(client, PREVISAO)
        res = client.post(_url(f"/assessments/{planned}/plan/{PREVISAO}/dod"),
                          json={"confirmed_items": items[:1]})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "CHECKLIST_INCOMPLETE"
        assert body["details"]["missing_items"] == items[1:]

    def test_confirm_once(self, client, planned):
        res = _confirm_dod(client, planned, PREVISAO)
        assert res.status_code == 201
        assert res.get_json()["slot_status"] == "IN_PROGRESS"

        res = _confirm_dod(client, planned, PREVISAO)
        assert res.status_code == 200
        assert res.get_json()["already_confirmed"] is True

    def test_dod_for_action_outside_plan(self, client, planned):
        res = _confirm_dod(client, planned, "ADM_FIN-MARGEM_PRODUTO")
        assert res.status_code == 404

    def test_concurrent_confirmation_keeps_first(self, client, planned, monkeypatch):
        assert _confirm_dod(client, planned, PREVISAO).status_code == 201

        real_lookup = assessment_lifecycle._get_dod
        lookups = []

        def late_lookup(assessment, action_key):
            lookups.append(action_key)
            return None if len(lookups) == 1 else real_lookup(assessment, action_key)

        monkeypatch.setattr(assessment_lifecycle, "_get_dod", late_lookup)
        res = _confirm_dod(client, planned, PREVISAO)
        assert res.status_code == 200
        assert res.get_json()["already_confirmed"] is True
        assert db.session.execute(
            select(func.count()).select_from(DodConfirmation)
        ).scalar() == 1


class TestEvidence:
    def test_record_evidence(self, client, planned):
        res = _evidence(client, planned, PREVISAO)
        assert res.status_code == 201
        body = res.get_json()
        assert body["declared_gain"] == "De 10 dias para 2 dias"
        assert body["slot_status"] == "IN_PROGRESS"

    def test_evidence_requires_before_and_after(self, client, planned):
        res = _evidence(client, planned, PREVISAO, before="  ", after="2 dias")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "EVIDENCE_REQUIRED"
        assert body["details"]["missing"] == ["before_baseline"]

    def test_evidence_is_write_once(self, client, planned):
        assert _evidence(client, planned, PREVISAO).status_code == 201
        res = _evidence(client, planned, PREVISAO, before="outro", after="valor")
        assert res.status_code == 409
        assert res.get_json()["code"] == "EVIDENCE_WRITE_ONCE"

        items = client.get(_url(f"/assessments/{planned}/plan")).get_json()["items"]
        stored = next(i for i in items if i["action_key"] == PREVISAO)["evidence"]
        assert stored["before_baseline"] == "10 dias"
        assert stored["after_result"] == "2 dias"

    def test_concurrent_evidence_keeps_first(self, client, planned, monkeypatch):
        assert _evidence(client, planned, PREVISAO).status_code == 201

        monkeypatch.setattr(assessment_lifecycle, "_get_evidence", lambda *a: None)
        res = _evidence(client, planned, PREVISAO, before="outro", after="valor")
        assert res.status_code == 409
        assert res.get_json()["code"] == "EVIDENCE_WRITE_ONCE"

        monkeypatch.undo()
        rows = db.session.execute(select(ActionEvidence)).scalars().all()
        assert [(r.before_baseline, r.after_result) for r in rows] == [("10 dias", "2 dias")]


class TestActionStatus:
    def test_done_needs_dod(self, client, planned):
        assert _evidence(client, planned, PREVISAO).status_code == 201
        res = _status(client, planned, PREVISAO, "DONE")
        assert res.status_code == 422
        assert res.get_json()["code"] == "CHECKLIST_INCOMPLETE"

    def test_done_needs_evidence(self, client, planned):
        assert _confirm_dod(client, planned, PREVISAO).status_code == 201
        res = _status(client, planned, PREVISAO, "DONE")
        assert res.status_code == 422
        assert res.get_json()["code"] == "EVIDENCE_REQUIRED"

    def test_done_with_dod_and_evidence(self, client, planned):
        _confirm_dod(client, planned, PREVISAO)
        _evidence(client, planned, PREVISAO)
        res = _status(client, planned, PREVISAO, "DONE")
        assert res.status_code == 200
        assert res.get_json()["status"] == "DONE"

    def test_drop_needs_reason(self, client, planned):
        res = _status(client, planned, REGUA, "DROPPED")
        assert res.status_code == 422
        assert res.get_json()["code"] == "DROP_REASON_REQUIRED"

        res = _status(client, planned, REGUA, "DROPPED", "   ")
        assert res.status_code == 422

    def test_drop_with_reason(self, client, planned):
        res = _status(client, planned, REGUA, "DROPPED", "Sem equipe neste mês")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "DROPPED"
        assert body["dropped_reason"] == "Sem equipe neste mês"

    def test_terminal_status_is_final(self, client, planned):
        _status(client, planned, REGUA, "DROPPED", "Sem equipe")
        res = _status(client, planned, REGUA, "IN_PROGRESS")
        assert res.status_code == 409
        assert res.get_json()["code"] == "INVALID_TRANSITION"

    def test_evidence_on_dropped_action(self, client, planned):
        _status(client, planned, REGUA, "DROPPED", "Sem equipe")
        res = _evidence(client, planned, REGUA)
        assert res.status_code == 409
        assert res.get_json()["code"] == "INVALID_TRANSITION"

    def test_unknown_status(self, client, planned):
        res = _status(client, planned, REGUA, "FINISHED")
        assert res.status_code == 422
        assert res.get_json()["code"] == "INVALID_STATUS"


# ═════════════════════════════════════════════════════════════════════════════
# Close & new cycle
# ═════════════════════════════════════════════════════════════════════════════


class TestCloseCycle:
    def test_close_without_plan(self, client, aid):
        res = client.post(_url(f"/assessments/{aid}/close"))
        assert res.status_code == 422
        assert res.get_json()["code"] == "CYCLE_NOT_FINISHED"

    def test_close_with_pending_actions(self, client, planned):
        _status(client, planned, REGUA, "DROPPED", "Sem equipe")
        res = client.post(_url(f"/assessments/{planned}/close"))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "CYCLE_NOT_FINISHED"
        assert [p["action_key"] for p in body["details"]["pending"]] == [PREVISAO, FUNIL]

    def test_close_cycle(self, client, planned):
        _finish_cycle(client, planned)
        res = client.post(_url(f"/assessments/{planned}/close"))
        assert res.status_code == 200
        body = res.get_json()
        assert body["assessment"]["status"] == "CLOSED"
        gains = {g["action_key"]: g for g in body["gains"]}
        assert gains[PREVISAO]["declared_gain"] == "De 10 dias para 2 dias"
        assert gains[REGUA]["status"] == "DROPPED"
        assert gains[REGUA]["declared_gain"] is None

        snap = client.get(_url(f"/assessments/{planned}/snapshot")).get_json()
        assert [p["action_key"] for p in snap["plan"]] == [PREVISAO, REGUA, FUNIL]
        assert snap["plan"][0]["status"] == "DONE"
        assert snap["evidence_summary"] == [{
            "action_key": PREVISAO,
            "title": "Montar previsão de caixa de 13 semanas",
            "before_baseline": "10 dias",
            "after_result": "2 dias",
            "declared_gain": "De 10 dias para 2 dias",
        }]

    def test_closed_cycle_is_read_only(self, client, planned):
        _finish_cycle(client, planned)
        client.post(_url(f"/assessments/{planned}/close"))

        res = _status(client, planned, FUNIL, "IN_PROGRESS")
        assert res.status_code == 409
        assert res.get_json()["code"] == "CYCLE_CLOSED"

        res = client.post(_url(f"/assessments/{planned}/plan"), json=_plan_body())
        assert res.get_json()["code"] == "CYCLE_CLOSED"

        res = _evidence(client, planned, REGUA)
        assert res.get_json()["code"] == "CYCLE_CLOSED"

        res = client.post(_url(f"/assessments/{planned}/close"))
        assert res.get_json()["code"] == "CYCLE_CLOSED"


class TestNewCycle:
    def test_new_cycle_requires_closed(self, client, planned):
        res = client.post(_url(f"/assessments/{planned}/new-cycle"))
        assert res.status_code == 409
        assert res.get_json()["code"] == "INVALID_TRANSITION"

    def test_new_cycle_archives_plan(self, client, planned):
        _finish_cycle(client, planned)
        client.post(_url(f"/assessments/{planned}/close"))

        res = client.post(_url(f"/assessments/{planned}/new-cycle"))
        assert res.status_code == 200
        body = res.get_json()
        assert body["archived_cycle"] == 1
        assert body["assessment"]["cycle_no"] == 2
        assert body["assessment"]["status"] == "SUBMITTED"
        assert body["assessment"]["full_version"] == 1

        plan = client.get(_url(f"/assessments/{planned}/plan")).get_json()
        assert plan["cycle_no"] == 2
        assert plan["items"] == []
        assert len(plan["history"]) == 3
        archived = {h["action_key"]: h for h in plan["history"]}
        assert archived[PREVISAO]["declared_gain"] == "De 10 dias para 2 dias"
        assert archived[FUNIL]["dropped_reason"] == "Prioridade do caixa"

    def test_used_actions_not_suggested_again(self, client, planned):
        _finish_cycle(client, planned)
        client.post(_url(f"/assessments/{planned}/close"))
        client.post(_url(f"/assessments/{planned}/new-cycle"))

        body = client.get(_url(f"/assessments/{planned}/suggestions")).get_json()
        assert body["cycle_no"] == 2
        assert body["excluded_action_keys"] == sorted([PREVISAO, REGUA, FUNIL])
        keys = {s["action_key"] for s in body["suggestions"]}
        assert not keys & {PREVISAO, REGUA, FUNIL}

    def test_new_cycle_plan_can_be_selected(self, client, planned):
        _finish_cycle(client, planned)
        client.post(_url(f"/assessments/{planned}/close"))
        client.post(_url(f"/assessments/{planned}/new-cycle"))

        keys = ("ADM_FIN-MARGEM_PRODUTO", "ADM_FIN-ORCAMENTO_ANUAL", PREVISAO)
        res = client.post(_url(f"/assessments/{planned}/plan"), json=_plan_body(keys))
        assert res.status_code == 200
        assert res.get_json()["cycle_no"] == 2

        # the same action in a new cycle starts without DoD or evidence
        item = next(i for i in res.get_json()["items"] if i["action_key"] == PREVISAO)
        assert item["dod_confirmed"] is False
        assert item["evidence"] is None


def test_new_version_blocked_by_active_plan(client, planned):
    res = client.post(_url("/versions"), json={})
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "DIAG_IN_PROGRESS"
    assert body["details"]["assessment_id"] == planned
