"""Diagnostic blueprint - REST surface of the self-diagnostic engine.

Endpoint groups (all under /api/v1/diagnostic):
  Assessment        POST /assessments, GET /assessments/<id>
  Answers           GET/PUT /assessments/<id>/answers
  Submit            POST /assessments/<id>/submit
  Causes            GET /assessments/<id>/causes[/pending]
                    PUT /assessments/<id>/causes/<gap_id>/answers
                    POST /assessments/<id>/causes/<gap_id>/classify
  Suggestions       GET /assessments/<id>/suggestions, /recommendations
  Plan              GET/POST /assessments/<id>/plan
                    POST /assessments/<id>/plan/<action_key>/dod|evidence
                    PATCH /assessments/<id>/plan/<action_key>/status
  Cycle             POST /assessments/<id>/close, /new-cycle
  Snapshot          GET /assessments/<id>/snapshot
  Versions          GET/POST /versions, GET /versions/<n>/snapshot, GET /compare
  Catalog           GET /catalog/questions, /catalog/causes, /actions/<key>/dod

company_id is resolved from the query string or JSON body and scopes every
assessment lookup; an assessment of another company is a 404.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from diagnostic.core.exceptions import (
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from diagnostic.middleware.identity import current_actor
from diagnostic.services import assessment_lifecycle as lifecycle
from diagnostic.services import catalog_service
from diagnostic.services.recommendation_service import (
    get_suggested_actions,
    list_recommendations,
)
from diagnostic.services.snapshot_service import SnapshotService
from diagnostic.utils.errors import E, api_error

logger = logging.getLogger(__name__)

diagnostic_bp = Blueprint("diagnostic", __name__, url_prefix="/api/v1/diagnostic")


# ── Company helpers ───────────────────────────────────────────────────────────


def _company_id() -> str | None:
    """Extract company_id from query string or JSON body."""
    cid = request.args.get("company_id")
    if cid:
        return cid.strip() or None
    data: dict = request.get_json(silent=True) or {}
    value = data.get("company_id")
    if not value:
        return None
    return str(value).strip() or None


def _company_required() -> tuple[str | None, tuple | None]:
    cid = _company_id()
    if not cid:
        return None, api_error(E.VALIDATION_REQUIRED, "company_id is required")
    if len(cid) > 64:
        return None, api_error(E.VALIDATION_INVALID, "company_id must be ≤ 64 characters")
    return cid, None


def _load(assessment_id: str):
    """Resolve the company-scoped assessment, or an error response."""
    company_id, err = _company_required()
    if err:
        return None, err
    return lifecycle.get_assessment(assessment_id, company_id), None


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Error handlers ────────────────────────────────────────────────────────────


@diagnostic_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@diagnostic_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(error.code, str(error), status=422, details=error.details)


@diagnostic_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(error.code, str(error), status=409,
                     details={"resource": error.resource, "field": error.field, "value": error.value})


@diagnostic_bp.errorhandler(StateConflictError)
def _handle_state_conflict(error: StateConflictError):
    return api_error(error.code, str(error), status=409, details=error.details)


@diagnostic_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in diagnostic endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error", status=500)


# ═════════════════════════════════════════════════════════════════════════
# Assessment & answers
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/assessments", methods=["POST"])
def start_assessment():
    """Return the company's current assessment, creating version 1 if needed.

    Body: {company_id, segment?}
    Returns: assessment dict (201 when created, 200 otherwise).
    """
    company_id, err = _company_required()
    if err:
        return err
    segment = (_body().get("segment") or "C").strip().upper()
    if segment not in catalog_service.SEGMENTS:
        return api_error(E.VALIDATION_INVALID, "segment must be one of C, I, S")

    assessment, created = lifecycle.start_assessment(company_id, segment, actor=current_actor())
    return jsonify({**assessment.to_dict(), "created": created}), 201 if created else 200


@diagnostic_bp.route("/assessments/<assessment_id>", methods=["GET"])
def get_assessment(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(lifecycle.assessment_detail(assessment)), 200


@diagnostic_bp.route("/assessments/<assessment_id>/answers", methods=["GET"])
def list_answers(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify({"items": lifecycle.list_answers(assessment)}), 200


@diagnostic_bp.route("/assessments/<assessment_id>/answers", methods=["PUT"])
def save_answers(assessment_id):
    """Upsert answers.

    Body: {answers: [{process_key, question_key, answer_value}]}
    """
    assessment, err = _load(assessment_id)
    if err:
        return err
    answers = _body().get("answers")
    if not isinstance(answers, list) or not answers:
        return api_error(E.VALIDATION_REQUIRED, "answers must be a non-empty list")
    items = lifecycle.save_answers(assessment, answers, actor=current_actor())
    return jsonify({"items": items}), 200


@diagnostic_bp.route("/assessments/<assessment_id>/submit", methods=["POST"])
def submit_assessment(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(lifecycle.submit_assessment(assessment, actor=current_actor())), 200


# ═════════════════════════════════════════════════════════════════════════
# Cause classification
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/assessments/<assessment_id>/causes/pending", methods=["GET"])
def pending_causes(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify({"items": lifecycle.list_pending_gaps(assessment)}), 200


@diagnostic_bp.route("/assessments/<assessment_id>/causes", methods=["GET"])
def list_causes(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify({"items": lifecycle.list_cause_records(assessment)}), 200


@diagnostic_bp.route("/assessments/<assessment_id>/causes/<gap_id>/answers", methods=["PUT"])
def save_cause_answers(assessment_id, gap_id):
    """Body: {answers: [{q_id, answer}] | {q_id: answer}}"""
    assessment, err = _load(assessment_id)
    if err:
        return err
    answers = _body().get("answers")
    if not isinstance(answers, (list, dict)) or not answers:
        return api_error(E.VALIDATION_REQUIRED, "answers is required")
    result = lifecycle.save_cause_answers(assessment, gap_id, answers, actor=current_actor())
    return jsonify(result), 200


@diagnostic_bp.route("/assessments/<assessment_id>/causes/<gap_id>/classify", methods=["POST"])
def classify_cause(assessment_id, gap_id):
    """Classify a gap's root cause.

    Body (optional): {answers: [{q_id, answer}] | {q_id: answer}}
    Returns: 201 on first classification, 200 otherwise.
    """
    assessment, err = _load(assessment_id)
    if err:
        return err
    answers = _body().get("answers")
    if answers is not None and not isinstance(answers, (list, dict)):
        return api_error(E.VALIDATION_INVALID, "answers must be a list or an object")
    result = lifecycle.classify_cause(assessment, gap_id, answers, actor=current_actor())
    created = result["classified"] and not result["already_classified"]
    return jsonify(result), 201 if created else 200


# ═════════════════════════════════════════════════════════════════════════
# Suggestions & recommendations
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/assessments/<assessment_id>/suggestions", methods=["GET"])
def suggestions(assessment_id):
    """Actions still available for the plan; processes without content are
    reported in ``content_gaps`` with ``code: NO_CONTENT_MATCH``."""
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(get_suggested_actions(assessment)), 200


@diagnostic_bp.route("/assessments/<assessment_id>/recommendations", methods=["GET"])
def recommendations(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify({"items": list_recommendations(assessment)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Plan
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/assessments/<assessment_id>/plan", methods=["GET"])
def get_plan(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify({
        "cycle_no": assessment.cycle_no,
        "items": lifecycle.get_plan(assessment),
        "history": lifecycle.list_cycle_history(assessment),
    }), 200


@diagnostic_bp.route("/assessments/<assessment_id>/plan", methods=["POST"])
def select_plan(assessment_id):
    """Body: {actions: [{action_key, owner_name, metric_text, checkpoint_date, position}] x3}"""
    assessment, err = _load(assessment_id)
    if err:
        return err
    actions = _body().get("actions")
    if not isinstance(actions, list):
        return api_error(E.VALIDATION_REQUIRED, "actions must be a list")
    items = lifecycle.select_plan(assessment, actions, actor=current_actor())
    return jsonify({"cycle_no": assessment.cycle_no, "items": items}), 200


@diagnostic_bp.route("/assessments/<assessment_id>/plan/<action_key>/dod", methods=["POST"])
def confirm_dod(assessment_id, action_key):
    """Body: {confirmed_items: [str]}"""
    assessment, err = _load(assessment_id)
    if err:
        return err
    items = _body().get("confirmed_items")
    if not isinstance(items, list):
        return api_error(E.VALIDATION_REQUIRED, "confirmed_items must be a list")
    result = lifecycle.confirm_dod(assessment, action_key, items, actor=current_actor())
    return jsonify(result), 200 if result["already_confirmed"] else 201


@diagnostic_bp.route("/assessments/<assessment_id>/plan/<action_key>/evidence", methods=["POST"])
def record_evidence(assessment_id, action_key):
    """Body: {before_baseline, after_result, evidence_text?}"""
    assessment, err = _load(assessment_id)
    if err:
        return err
    data = _body()
    result = lifecycle.record_evidence(
        assessment,
        action_key,
        data.get("before_baseline"),
        data.get("after_result"),
        evidence_text=data.get("evidence_text"),
        actor=current_actor(),
    )
    return jsonify(result), 201


@diagnostic_bp.route("/assessments/<assessment_id>/plan/<action_key>/status", methods=["PATCH"])
def set_action_status(assessment_id, action_key):
    """Body: {status, dropped_reason?}"""
    assessment, err = _load(assessment_id)
    if err:
        return err
    data = _body()
    status = (data.get("status") or "").strip().upper()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = lifecycle.set_action_status(
        assessment,
        action_key,
        status,
        dropped_reason=data.get("dropped_reason"),
        actor=current_actor(),
        drop_reason_min_length=current_app.config.get("DROP_REASON_MIN_LENGTH", 1),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Cycle & snapshot
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/assessments/<assessment_id>/close", methods=["POST"])
def close_cycle(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(lifecycle.close_cycle(assessment, actor=current_actor())), 200


@diagnostic_bp.route("/assessments/<assessment_id>/new-cycle", methods=["POST"])
def new_cycle(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(lifecycle.start_new_cycle(assessment, actor=current_actor())), 200


@diagnostic_bp.route("/assessments/<assessment_id>/snapshot", methods=["GET"])
def get_snapshot(assessment_id):
    assessment, err = _load(assessment_id)
    if err:
        return err
    return jsonify(SnapshotService.get_snapshot(assessment)), 200


# ═════════════════════════════════════════════════════════════════════════
# Versions
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/versions", methods=["GET"])
def list_versions():
    company_id, err = _company_required()
    if err:
        return err
    return jsonify({"items": lifecycle.list_versions(company_id)}), 200


@diagnostic_bp.route("/versions", methods=["POST"])
def new_version():
    """Start a fresh diagnostic version ("redo diagnosis").

    Body: {company_id, segment?}
    """
    company_id, err = _company_required()
    if err:
        return err
    segment = _body().get("segment")
    if segment is not None:
        segment = str(segment).strip().upper()
        if segment not in catalog_service.SEGMENTS:
            return api_error(E.VALIDATION_INVALID, "segment must be one of C, I, S")
    assessment, created = lifecycle.start_new_version(company_id, actor=current_actor(),
                                                      segment=segment)
    return jsonify({**assessment.to_dict(), "created": created}), 201 if created else 200


@diagnostic_bp.route("/versions/<int:full_version>/snapshot", methods=["GET"])
def version_snapshot(full_version):
    company_id, err = _company_required()
    if err:
        return err
    return jsonify(SnapshotService.get_snapshot_by_version(company_id, full_version)), 200


@diagnostic_bp.route("/compare", methods=["GET"])
def compare_versions():
    """Query params: company_id, from, to (version numbers)."""
    company_id, err = _company_required()
    if err:
        return err
    from_version = request.args.get("from", type=int)
    to_version = request.args.get("to", type=int)
    if from_version is None or to_version is None:
        return api_error(E.VALIDATION_REQUIRED, "from and to are required integers")
    result = SnapshotService.compare_versions(company_id, from_version, to_version)
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Catalog (read-only)
# ═════════════════════════════════════════════════════════════════════════


@diagnostic_bp.route("/catalog/questions", methods=["GET"])
def catalog_questions():
    segment = (request.args.get("segment") or "C").strip().upper()
    if segment not in catalog_service.SEGMENTS:
        return api_error(E.VALIDATION_INVALID, "segment must be one of C, I, S")
    catalog = catalog_service.get_question_catalog()
    return jsonify({
        "version": catalog.version,
        "processes": [p.to_dict() for p in catalog.processes],
        "questions": [q.to_dict() for q in catalog.questions_for(segment)],
    }), 200


@diagnostic_bp.route("/catalog/causes", methods=["GET"])
def catalog_causes():
    catalog = catalog_service.get_cause_catalog()
    return jsonify({
        "version": catalog.version,
        "cause_classes": [c.to_dict() for c in catalog.cause_classes],
        "gaps": [g.to_dict() for g in catalog.gaps],
    }), 200


@diagnostic_bp.route("/actions/<action_key>/dod", methods=["GET"])
def action_dod(action_key):
    return jsonify(lifecycle.get_action_dod(action_key)), 200
