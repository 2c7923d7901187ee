"""
Assessment Lifecycle - the state machine of one diagnostic.

    DRAFT ──submit──▶ SUBMITTED ──close──▶ CLOSED ──new cycle──▶ SUBMITTED
                                              │
                                              └──new version──▶ (new Assessment, DRAFT)

Two independent counters:
    full_version   "redo diagnosis": a new Assessment row, fresh answers
    cycle_no       "new cycle": same row, plan archived and re-selected

Plan slots (exactly 3 per cycle):
    NOT_STARTED → IN_PROGRESS → DONE | DROPPED  (DONE needs DoD + evidence,
                                                 DROPPED needs a reason)

Every public mutation validates first, then writes and commits once, and
rolls back on any failure so readers never see a half-applied transition.
Closed cycles are read-only.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from diagnostic.core.exceptions import (
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from diagnostic.models import db
from diagnostic.models.assessment import (
    SEGMENTS,
    Answer,
    Assessment,
    CauseAnswer,
    Finding,
    GapCauseRecord,
    GapInstance,
    ProcessScore,
    can_transition_assessment,
)
from diagnostic.models.audit import write_audit
from diagnostic.models.plan import (
    PLAN_POSITIONS,
    PLAN_SIZE,
    SLOT_STATUSES,
    ActionEvidence,
    CycleHistory,
    DodConfirmation,
    PlanSlot,
    can_transition_slot,
)
from diagnostic.services import catalog_service
from diagnostic.services.cause_engine import (
    get_cause_record,
    load_cause_answers,
    missing_cause_answers,
    persist_classification,
    score_cause,
)
from diagnostic.services.findings import build_findings
from diagnostic.services.recommendation_service import (
    answers_by_process,
    derive_and_persist_recommendations,
)
from diagnostic.services.scoring import clamp_answer, compute_process_score, to_external_score
from diagnostic.services.snapshot_service import SnapshotService
from diagnostic.services.value_events import emit_value_event
from diagnostic.utils.errors import E

logger = logging.getLogger(__name__)

DEFAULT_DROP_REASON_MIN_LENGTH = 1


def _now():
    return datetime.now(timezone.utc)


def _log_extra(assessment: Assessment, **extra) -> dict:
    return {
        "assessment_id": assessment.id,
        "company_id": assessment.company_id,
        "full_version": assessment.full_version,
        "cycle_no": assessment.cycle_no,
        **extra,
    }


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ═════════════════════════════════════════════════════════════════════════════
# Lookups & guards
# ═════════════════════════════════════════════════════════════════════════════


def get_assessment(assessment_id: str, company_id: str | None = None) -> Assessment:
    """Load an assessment, scoped to *company_id* when given."""
    stmt = select(Assessment).where(Assessment.id == assessment_id)
    if company_id is not None:
        stmt = stmt.where(Assessment.company_id == company_id)
    assessment = db.session.execute(stmt).scalar_one_or_none()
    if assessment is None:
        raise NotFoundError(resource="Assessment", resource_id=assessment_id)
    return assessment


def _require_not_closed(assessment: Assessment) -> None:
    if assessment.status == "CLOSED":
        raise StateConflictError(
            "Cycle is closed and read-only; start a new cycle or a new version",
            code=E.CYCLE_CLOSED,
        )


def _require_open_plan(assessment: Assessment) -> None:
    """Plan operations need a SUBMITTED assessment."""
    _require_not_closed(assessment)
    if assessment.status != "SUBMITTED":
        raise StateConflictError("Submit the diagnostic before working on the plan",
                                 code=E.DIAG_NOT_READY)


def _transition(assessment: Assessment, new_status: str) -> None:
    if not can_transition_assessment(assessment.status, new_status):
        raise StateConflictError(
            f"Invalid transition: {assessment.status} → {new_status}",
            code=E.INVALID_TRANSITION,
        )
    assessment.status = new_status


def _current_slots(assessment: Assessment) -> list[PlanSlot]:
    return list(db.session.execute(
        select(PlanSlot)
        .where(PlanSlot.assessment_id == assessment.id)
        .order_by(PlanSlot.position)
    ).scalars().all())


def _get_slot(assessment: Assessment, action_key: str) -> PlanSlot:
    slot = db.session.execute(
        select(PlanSlot).where(
            PlanSlot.assessment_id == assessment.id,
            PlanSlot.action_key == action_key,
        )
    ).scalar_one_or_none()
    if slot is None:
        raise NotFoundError(resource="PlanSlot", resource_id=action_key)
    return slot


def _get_dod(assessment: Assessment, action_key: str) -> DodConfirmation | None:
    return db.session.execute(
        select(DodConfirmation).where(
            DodConfirmation.assessment_id == assessment.id,
            DodConfirmation.action_key == action_key,
            DodConfirmation.cycle_no == assessment.cycle_no,
        )
    ).scalar_one_or_none()


def _get_evidence(assessment: Assessment, action_key: str) -> ActionEvidence | None:
    return db.session.execute(
        select(ActionEvidence).where(
            ActionEvidence.assessment_id == assessment.id,
            ActionEvidence.action_key == action_key,
            ActionEvidence.cycle_no == assessment.cycle_no,
        )
    ).scalar_one_or_none()


def _mark_touched(slot: PlanSlot) -> None:
    """Any interaction moves a NOT_STARTED slot to IN_PROGRESS."""
    if slot.status == "NOT_STARTED":
        slot.status = "IN_PROGRESS"


# ═════════════════════════════════════════════════════════════════════════════
# Assessment creation & answers
# ═════════════════════════════════════════════════════════════════════════════


def _company_assessments(company_id: str) -> list[Assessment]:
    return list(db.session.execute(
        select(Assessment)
        .where(Assessment.company_id == company_id)
        .order_by(Assessment.full_version.desc())
    ).scalars().all())


def start_assessment(company_id: str, segment: str = "C",
                     actor: str | None = None) -> tuple[Assessment, bool]:
    """
    Return the company's current assessment, creating version 1 if none exists.

    Current = the latest DRAFT/SUBMITTED one, else the latest CLOSED one.
    Returns ``(assessment, created)``.
    """
    if segment not in SEGMENTS:
        raise ValidationError(f"segment must be one of {sorted(SEGMENTS)}",
                              code=E.VALIDATION_INVALID)

    existing = _company_assessments(company_id)
    for assessment in existing:
        if assessment.status in ("DRAFT", "SUBMITTED"):
            return assessment, False
    if existing:
        return existing[0], False

    assessment = Assessment(
        company_id=company_id, segment=segment, full_version=1, created_by=actor,
    )
    db.session.add(assessment)
    try:
        db.session.flush()
    except IntegrityError:
        # concurrent first start: the other request created version 1
        db.session.rollback()
        return _company_assessments(company_id)[0], False
    write_audit(entity_type="assessment", entity_id=assessment.id, action="assessment.create",
                actor=actor, company_id=company_id, diff={"segment": segment, "full_version": 1})
    _commit()
    logger.info("Assessment created", extra=_log_extra(assessment))
    return assessment, True


def save_answers(assessment: Assessment, answers: list[dict],
                 actor: str | None = None) -> list[dict]:
    """
    Upsert 0–10 answers (clamped).  DRAFT only.

    Each item: ``{process_key, question_key, answer_value}``.
    """
    _require_not_closed(assessment)
    if assessment.status != "DRAFT":
        raise StateConflictError("Answers can only change while the diagnostic is a draft",
                                 code=E.DIAG_NOT_DRAFT)

    catalog = catalog_service.get_question_catalog()
    errors: list[dict] = []
    cleaned: dict[tuple[str, str], int] = {}
    for idx, item in enumerate(answers):
        pk, qk = item.get("process_key"), item.get("question_key")
        question = catalog.question(pk, qk) if pk and qk else None
        if question is None or assessment.segment not in question.segments:
            errors.append({"index": idx, "error": f"unknown question {pk}/{qk}"})
            continue
        try:
            cleaned[(pk, qk)] = clamp_answer(item.get("answer_value"))
        except (TypeError, ValueError):
            errors.append({"index": idx, "error": "answer_value must be a number between 0 and 10"})
    if errors:
        raise ValidationError("Invalid answers", details={"errors": errors}, code=E.INVALID_ANSWER)

    existing = {
        (a.process_key, a.question_key): a
        for a in db.session.execute(
            select(Answer).where(Answer.assessment_id == assessment.id)
        ).scalars().all()
    }
    for (pk, qk), value in cleaned.items():
        row = existing.get((pk, qk))
        if row is None:
            db.session.add(Answer(assessment_id=assessment.id, process_key=pk,
                                  question_key=qk, answer_value=value))
        else:
            row.answer_value = value
    write_audit(entity_type="assessment", entity_id=assessment.id,
                action="assessment.answers_saved", actor=actor,
                company_id=assessment.company_id, diff={"count": len(cleaned)})
    _commit()
    return list_answers(assessment)


def list_answers(assessment: Assessment) -> list[dict]:
    rows = db.session.execute(
        select(Answer)
        .where(Answer.assessment_id == assessment.id)
        .order_by(Answer.process_key, Answer.question_key)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def _completeness(assessment: Assessment) -> dict:
    catalog = catalog_service.get_question_catalog()
    answered = answers_by_process(assessment.id)
    missing: list[dict] = []
    answered_count = 0
    total_expected = 0
    for pk in catalog_service.PROCESS_KEYS:
        keys = [q.question_key for q in catalog.questions_for(assessment.segment, pk)]
        total_expected += len(keys)
        have = answered.get(pk, {})
        answered_count += sum(1 for k in keys if k in have)
        gaps = [k for k in keys if k not in have]
        if gaps:
            missing.append({"process_key": pk, "missing_question_keys": gaps})
    return {
        "missing": missing,
        "missing_process_keys": [m["process_key"] for m in missing],
        "answered_count": answered_count,
        "total_expected": total_expected,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Submit
# ═════════════════════════════════════════════════════════════════════════════


def submit_assessment(assessment: Assessment, actor: str | None = None) -> dict:
    """
    Score, detect gaps, derive recommendations, write the first snapshot and
    flip DRAFT → SUBMITTED, all in one transaction.

    Raises ``ValidationError(DIAG_INCOMPLETE)`` naming the first incomplete
    process when any segment question is unanswered.
    """
    _require_not_closed(assessment)
    if assessment.status != "DRAFT":
        raise StateConflictError("Diagnostic was already submitted", code=E.DIAG_NOT_DRAFT)

    completeness = _completeness(assessment)
    if completeness["missing"]:
        first = completeness["missing"][0]["process_key"]
        raise ValidationError(
            f"Diagnostic incomplete: answer every question of {catalog_service.process_label(first)}",
            details=completeness,
            code=E.DIAG_INCOMPLETE,
        )

    questions = catalog_service.get_question_catalog()
    causes = catalog_service.get_cause_catalog()
    answers = answers_by_process(assessment.id)

    try:
        db.session.execute(
            ProcessScore.__table__.delete().where(ProcessScore.assessment_id == assessment.id)
        )
        results = []
        for pk in catalog_service.PROCESS_KEYS:
            result = compute_process_score(
                pk, questions.questions_for(assessment.segment, pk), answers.get(pk, {}),
            )
            results.append(result)
            db.session.add(ProcessScore(
                assessment_id=assessment.id,
                process_key=pk,
                band=result.band,
                score_numeric=result.score,
                support_json=_json(result.support),
            ))
        db.session.flush()

        classified_now = []
        for result in results:
            gap = causes.gap_for(result.process_key, result.band)
            if gap is None:
                continue
            instance = GapInstance(assessment_id=assessment.id, gap_id=gap.gap_id,
                                   process_key=result.process_key)
            db.session.add(instance)
            record = get_cause_record(assessment.id, gap.gap_id)
            if record is None:
                stored = load_cause_answers(assessment.id, gap.gap_id)
                if not missing_cause_answers(gap, stored):
                    cause = score_cause(gap, stored)
                    if cause.classified:
                        record, _ = persist_classification(
                            assessment, gap, cause, catalog_version=causes.version, actor=actor,
                        )
                        classified_now.append(gap.gap_id)
            if record is not None:
                instance.status = "CAUSE_CLASSIFIED"
        db.session.flush()

        recommendations = derive_and_persist_recommendations(assessment)

        score_dicts = [
            {"process_key": r.process_key, "band": r.band, "score": r.score} for r in results
        ]
        findings = build_findings(score_dicts, recommendations, questions=questions, causes=causes)
        db.session.execute(Finding.__table__.delete().where(Finding.assessment_id == assessment.id))
        for finding_type, section in (("VAZAMENTO", "vazamentos"), ("ALAVANCA", "alavancas")):
            for entry in findings[section]:
                db.session.add(Finding(
                    assessment_id=assessment.id,
                    finding_type=finding_type,
                    position=entry["position"],
                    process_key=entry["process_key"],
                    is_fallback=entry["is_fallback"],
                    payload_json=_json(entry),
                ))

        processes = [
            {
                "process_key": r.process_key,
                "label": catalog_service.process_label(r.process_key),
                "band": r.band,
                "score": r.score,
                "band_rule": r.band_rule,
                "dimension_scores": r.dimension_scores,
            }
            for r in results
        ]
        SnapshotService.capture_on_submit(
            assessment, processes=processes, findings=findings, recommendations=recommendations,
        )

        _transition(assessment, "SUBMITTED")
        assessment.submitted_at = _now()
        write_audit(entity_type="assessment", entity_id=assessment.id, action="assessment.submit",
                    actor=actor, company_id=assessment.company_id,
                    diff={"status": {"old": "DRAFT", "new": "SUBMITTED"},
                          "bands": {r.process_key: r.band for r in results}})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    for gap_id in classified_now:
        _emit_cause_classified(assessment, gap_id, actor)
    if classified_now:
        _commit()

    logger.info("Assessment submitted", extra=_log_extra(assessment))
    return {
        "assessment": assessment.to_dict(),
        "scores": [
            {"process_key": p["process_key"], "band": p["band"], "score": p["score"],
             "score_external": to_external_score(p["score"])}
            for p in processes
        ],
        "recommendations": recommendations,
        "findings": findings,
        "pending_gaps": [g["gap_id"] for g in list_pending_gaps(assessment)],
    }


def _json(value) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


# ═════════════════════════════════════════════════════════════════════════════
# Cause classification
# ═════════════════════════════════════════════════════════════════════════════


def list_pending_gaps(assessment: Assessment) -> list[dict]:
    """Gaps detected at submit still waiting for their cause."""
    instances = db.session.execute(
        select(GapInstance).where(
            GapInstance.assessment_id == assessment.id,
            GapInstance.status == "CAUSE_PENDING",
        ).order_by(GapInstance.process_key)
    ).scalars().all()
    pending = []
    for inst in instances:
        gap = catalog_service.get_gap(inst.gap_id)
        if gap is None:
            continue
        stored = load_cause_answers(assessment.id, gap.gap_id)
        pending.append({
            **inst.to_dict(),
            "client_title": gap.client_title,
            "client_description": gap.client_description,
            "cause_questions": [q.to_dict() for q in gap.cause_questions],
            "answers": stored,
            "missing_q_ids": missing_cause_answers(gap, stored),
        })
    return pending


def list_cause_records(assessment: Assessment) -> list[dict]:
    causes = catalog_service.get_cause_catalog()
    rows = db.session.execute(
        select(GapCauseRecord)
        .where(GapCauseRecord.assessment_id == assessment.id)
        .order_by(GapCauseRecord.gap_id)
    ).scalars().all()
    result = []
    for row in rows:
        data = row.to_dict()
        primary = causes.cause(row.cause_primary)
        data["cause_primary_label"] = primary.label if primary else None
        result.append(data)
    return result


def _normalise_cause_answers(answers) -> dict[str, str]:
    if isinstance(answers, dict):
        return {str(k): v for k, v in answers.items()}
    return {str(a.get("q_id")): a.get("answer") for a in answers or [] if isinstance(a, dict)}


def _store_cause_answers(assessment: Assessment, gap, answers: dict[str, str]) -> None:
    options = {q.q_id: set(q.options) for q in gap.cause_questions}
    errors = []
    for q_id, answer in answers.items():
        if q_id not in options:
            errors.append({"q_id": q_id, "error": "question does not belong to this gap"})
        elif answer not in options[q_id]:
            errors.append({"q_id": q_id, "error": f"answer must be one of {sorted(options[q_id])}"})
    if errors:
        raise ValidationError("Invalid cause answers", details={"errors": errors},
                              code=E.INVALID_ANSWER)

    existing = {
        r.q_id: r
        for r in db.session.execute(
            select(CauseAnswer).where(
                CauseAnswer.assessment_id == assessment.id,
                CauseAnswer.gap_id == gap.gap_id,
            )
        ).scalars().all()
    }
    for q_id, answer in answers.items():
        row = existing.get(q_id)
        if row is None:
            db.session.add(CauseAnswer(assessment_id=assessment.id, gap_id=gap.gap_id,
                                       q_id=q_id, answer=answer))
        else:
            row.answer = answer
    db.session.flush()


def _get_gap_or_404(gap_id: str):
    gap = catalog_service.get_gap(gap_id)
    if gap is None:
        raise NotFoundError(resource="Gap", resource_id=gap_id)
    return gap


def _gap_instance(assessment: Assessment, gap_id: str) -> GapInstance | None:
    return db.session.execute(
        select(GapInstance).where(
            GapInstance.assessment_id == assessment.id,
            GapInstance.gap_id == gap_id,
        )
    ).scalar_one_or_none()


def save_cause_answers(assessment: Assessment, gap_id: str, answers,
                       actor: str | None = None) -> dict:
    """Upsert Likert answers for a gap until it is classified."""
    _require_not_closed(assessment)
    gap = _get_gap_or_404(gap_id)
    if get_cause_record(assessment.id, gap_id) is not None:
        raise ConflictError("GapCauseRecord", "gap_id", gap_id, code=E.GAP_ALREADY_CLASSIFIED)
    if assessment.status == "SUBMITTED" and _gap_instance(assessment, gap_id) is None:
        raise ValidationError(f"Gap {gap_id} is not pending for this assessment",
                              code=E.GAP_NOT_PENDING)

    _store_cause_answers(assessment, gap, _normalise_cause_answers(answers))
    _commit()
    stored = load_cause_answers(assessment.id, gap_id)
    return {"gap_id": gap_id, "answers": stored, "missing_q_ids": missing_cause_answers(gap, stored)}


def _emit_cause_classified(assessment: Assessment, gap_id: str, actor: str | None) -> None:
    record = get_cause_record(assessment.id, gap_id)
    emit_value_event("CAUSE_CLASSIFIED", assessment_id=assessment.id,
                     company_id=assessment.company_id, user_id=actor,
                     meta={"gap_id": gap_id, "cause_primary": record.cause_primary if record else None})
    write_audit(entity_type="gap", entity_id=f"{assessment.id}:{gap_id}", action="gap.classify",
                actor=actor, company_id=assessment.company_id,
                diff={"cause_primary": record.cause_primary if record else None,
                      "cause_secondary": record.cause_secondary if record else None})


def classify_cause(assessment: Assessment, gap_id: str, answers=None,
                   actor: str | None = None) -> dict:
    """
    Classify a detected gap's root cause once.

    Optional *answers* are merged into the stored cause answers first.  An
    already classified gap returns the stored record unchanged with
    ``already_classified=True``.  When no cause scores above zero nothing is
    persisted and the gap stays pending.
    """
    _require_not_closed(assessment)
    gap = _get_gap_or_404(gap_id)
    causes = catalog_service.get_cause_catalog()

    # Only detected gaps classify; a DRAFT keeps cause answers until submit.
    instance = _gap_instance(assessment, gap_id)
    if instance is None:
        raise ValidationError(f"Gap {gap_id} is not pending for this assessment",
                              code=E.GAP_NOT_PENDING)

    existing = get_cause_record(assessment.id, gap_id)
    if existing is not None:
        return {"gap_id": gap_id, "classified": True, "already_classified": True,
                "record": existing.to_dict()}

    try:
        if answers:
            _store_cause_answers(assessment, gap, _normalise_cause_answers(answers))
        stored = load_cause_answers(assessment.id, gap_id)
        missing = missing_cause_answers(gap, stored)
        if missing:
            raise ValidationError(f"Answer every cause question of {gap_id}",
                                  details={"missing": missing}, code=E.DIAG_INCOMPLETE)

        result = score_cause(gap, stored)
        if not result.classified:
            db.session.commit()
            logger.info("Gap %s left unclassified: no cause scored", gap_id,
                        extra=_log_extra(assessment, gap_id=gap_id))
            return {"gap_id": gap_id, "classified": False, "already_classified": False,
                    "result": result.to_dict()}

        record, created = persist_classification(
            assessment, gap, result, catalog_version=causes.version, actor=actor,
        )
        instance.status = "CAUSE_CLASSIFIED"
        if created and assessment.status == "SUBMITTED":
            derive_and_persist_recommendations(assessment)
        if created:
            _emit_cause_classified(assessment, gap_id, actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Gap %s classified as %s", gap_id, record.cause_primary,
                extra=_log_extra(assessment, gap_id=gap_id))
    return {
        "gap_id": gap_id,
        "classified": True,
        "already_classified": not created,
        "record": record.to_dict(),
        "result": result.to_dict(),
        "mechanism_actions": [
            m.to_dict() for m in gap.mechanism_actions_for(record.cause_primary)
        ],
    }


# ═════════════════════════════════════════════════════════════════════════════
# Plan
# ═════════════════════════════════════════════════════════════════════════════


def _parse_date(value) -> date | None:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _validate_plan(entries) -> tuple[list[dict], list[dict]]:
    """Return ``(cleaned_entries, errors)`` for a plan submission."""
    if not isinstance(entries, list) or len(entries) != PLAN_SIZE:
        return [], [{"error": f"plan must have exactly {PLAN_SIZE} actions"}]

    errors: list[dict] = []
    cleaned: list[dict] = []
    for idx, raw in enumerate(entries):
        if not isinstance(raw, dict):
            errors.append({"index": idx, "error": "entry must be an object"})
            continue
        entry = {
            "action_key": (raw.get("action_key") or "").strip(),
            "owner_name": (raw.get("owner_name") or "").strip(),
            "metric_text": (raw.get("metric_text") or "").strip(),
            "checkpoint_date": _parse_date(raw.get("checkpoint_date")),
            "position": raw.get("position"),
        }
        for fld in ("action_key", "owner_name", "metric_text"):
            if not entry[fld]:
                errors.append({"index": idx, "field": fld, "error": "required"})
        if entry["checkpoint_date"] is None:
            errors.append({"index": idx, "field": "checkpoint_date", "error": "ISO date required"})
        if isinstance(entry["position"], bool) or not isinstance(entry["position"], int):
            errors.append({"index": idx, "field": "position", "error": "integer required"})
        cleaned.append(entry)

    if not errors:
        positions = sorted(e["position"] for e in cleaned)
        if set(positions) != PLAN_POSITIONS or len(positions) != PLAN_SIZE:
            errors.append({"field": "position", "error": "positions must be 1, 2 and 3"})
        keys = [e["action_key"] for e in cleaned]
        if len(set(keys)) != len(keys):
            errors.append({"field": "action_key", "error": "actions must be distinct"})
    return cleaned, errors


def select_plan(assessment: Assessment, entries, actor: str | None = None) -> list[dict]:
    """
    Replace the cycle's plan with exactly 3 actions, atomically.

    Any catalog action may be chosen, including ones already used in
    earlier cycles.  Replacement is refused once any slot has progress.
    """
    _require_open_plan(assessment)
    cleaned, errors = _validate_plan(entries)
    if errors:
        raise ValidationError("Invalid plan", details={"errors": errors}, code=E.PLAN_INVALID)

    actions = {}
    unknown = []
    for entry in cleaned:
        action = catalog_service.find_action(entry["action_key"])
        if action is None:
            unknown.append(entry["action_key"])
        actions[entry["action_key"]] = action
    if unknown:
        raise ValidationError("Unknown catalog action", details={"action_keys": unknown},
                              code=E.UNKNOWN_ACTION)

    current = _current_slots(assessment)
    progressed = [s.action_key for s in current if s.status != "NOT_STARTED"]
    progressed += [
        s.action_key for s in current
        if s.status == "NOT_STARTED" and (_get_dod(assessment, s.action_key)
                                          or _get_evidence(assessment, s.action_key))
    ]
    if progressed:
        raise StateConflictError("Plan already has progress and cannot be replaced",
                                 code=E.PLAN_IN_PROGRESS, details={"action_keys": progressed})

    try:
        for slot in current:
            db.session.delete(slot)
        db.session.flush()
        for entry in sorted(cleaned, key=lambda e: e["position"]):
            action = actions[entry["action_key"]]
            db.session.add(PlanSlot(
                assessment_id=assessment.id,
                cycle_no=assessment.cycle_no,
                action_key=entry["action_key"],
                process_key=action.process_key,
                band=action.band,
                position=entry["position"],
                owner_name=entry["owner_name"],
                metric_text=entry["metric_text"],
                checkpoint_date=entry["checkpoint_date"],
            ))
        db.session.flush()
        write_audit(entity_type="plan", entity_id=assessment.id, action="plan.select",
                    actor=actor, company_id=assessment.company_id,
                    diff={"cycle_no": assessment.cycle_no,
                          "action_keys": [e["action_key"] for e in cleaned],
                          "replaced": [s.action_key for s in current]})
        emit_value_event("PLAN_CREATED", assessment_id=assessment.id,
                         company_id=assessment.company_id, user_id=actor,
                         meta={"cycle_no": assessment.cycle_no,
                               "action_keys": [e["action_key"] for e in cleaned]})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Plan selected", extra=_log_extra(assessment))
    return get_plan(assessment)


def get_plan(assessment: Assessment) -> list[dict]:
    """Current plan slots with their action, DoD and evidence state."""
    plan = []
    for slot in _current_slots(assessment):
        action = catalog_service.find_action(slot.action_key)
        dod = _get_dod(assessment, slot.action_key)
        evidence = _get_evidence(assessment, slot.action_key)
        plan.append({
            **slot.to_dict(),
            "title": action.title if action else slot.action_key,
            "done_when": list(action.done_when) if action else [],
            "dod_confirmed": dod is not None,
            "evidence": evidence.to_dict() if evidence else None,
        })
    return plan


def get_action_dod(action_key: str) -> dict:
    action = catalog_service.find_action(action_key)
    if action is None:
        raise NotFoundError(resource="Action", resource_id=action_key)
    return {"action_key": action.action_key, "title": action.title,
            "done_when": list(action.done_when), "source": action.source}


def confirm_dod(assessment: Assessment, action_key: str, confirmed_items,
                actor: str | None = None) -> dict:
    """
    Confirm the Definition-of-Done checklist of a plan action.

    Every ``done_when`` item must be confirmed.  Created once; a repeat
    call returns the stored confirmation.
    """
    _require_open_plan(assessment)
    slot = _get_slot(assessment, action_key)

    existing = _get_dod(assessment, action_key)
    if existing is not None:
        return {**existing.to_dict(), "already_confirmed": True, "slot_status": slot.status}

    if slot.is_terminal:
        raise StateConflictError(f"Action {action_key} is {slot.status}",
                                 code=E.INVALID_TRANSITION)

    action = catalog_service.find_action(action_key)
    required = list(action.done_when) if action else []
    given = {str(i).strip() for i in (confirmed_items or []) if isinstance(i, str)}
    missing = [item for item in required if item not in given]
    if missing:
        raise ValidationError("Every checklist item must be confirmed",
                              details={"missing_items": missing}, code=E.CHECKLIST_INCOMPLETE)

    dod = DodConfirmation(
        assessment_id=assessment.id,
        cycle_no=assessment.cycle_no,
        action_key=action_key,
        confirmed_items_json=_json(required),
        confirmed_by=actor,
    )
    try:
        with db.session.begin_nested():
            db.session.add(dod)
    except IntegrityError:
        winner = _get_dod(assessment, action_key)
        db.session.commit()
        return {**winner.to_dict(), "already_confirmed": True, "slot_status": slot.status}

    try:
        _mark_touched(slot)
        write_audit(entity_type="plan_slot", entity_id=f"{assessment.id}:{action_key}",
                    action="plan_slot.dod_confirmed", actor=actor,
                    company_id=assessment.company_id, diff={"items": len(required)})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {**dod.to_dict(), "already_confirmed": False, "slot_status": slot.status}


def record_evidence(assessment: Assessment, action_key: str, before_baseline: str,
                    after_result: str, evidence_text: str | None = None,
                    actor: str | None = None) -> dict:
    """
    Record before/after evidence of a plan action.  Write-once per cycle.

    A second call raises ``ConflictError(EVIDENCE_WRITE_ONCE)`` and leaves
    the stored values untouched.
    """
    _require_open_plan(assessment)
    slot = _get_slot(assessment, action_key)

    before = (before_baseline or "").strip() if isinstance(before_baseline, str) else ""
    after = (after_result or "").strip() if isinstance(after_result, str) else ""
    missing = [f for f, v in (("before_baseline", before), ("after_result", after)) if not v]
    if missing:
        raise ValidationError("before_baseline and after_result are required",
                              details={"missing": missing}, code=E.EVIDENCE_REQUIRED)

    if _get_evidence(assessment, action_key) is not None:
        raise ConflictError("ActionEvidence", "action_key", action_key, code=E.EVIDENCE_WRITE_ONCE)
    if slot.status == "DROPPED":
        raise StateConflictError(f"Action {action_key} was dropped", code=E.INVALID_TRANSITION)

    evidence = ActionEvidence(
        assessment_id=assessment.id,
        cycle_no=assessment.cycle_no,
        action_key=action_key,
        evidence_text=(evidence_text or "").strip() or None,
        before_baseline=before,
        after_result=after,
        declared_gain=f"De {before} para {after}",
        created_by=actor,
    )
    try:
        with db.session.begin_nested():
            db.session.add(evidence)
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ActionEvidence", "action_key", action_key,
                            code=E.EVIDENCE_WRITE_ONCE) from exc

    try:
        _mark_touched(slot)
        write_audit(entity_type="evidence", entity_id=f"{assessment.id}:{action_key}",
                    action="evidence.create", actor=actor, company_id=assessment.company_id,
                    diff={"cycle_no": assessment.cycle_no})
        emit_value_event("GAIN_DECLARED", assessment_id=assessment.id,
                         company_id=assessment.company_id, user_id=actor,
                         meta={"action_key": action_key, "cycle_no": assessment.cycle_no})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Evidence recorded", extra=_log_extra(assessment, action_key=action_key))
    return {**evidence.to_dict(), "slot_status": slot.status}


def set_action_status(assessment: Assessment, action_key: str, status: str,
                      dropped_reason: str | None = None, actor: str | None = None,
                      drop_reason_min_length: int = DEFAULT_DROP_REASON_MIN_LENGTH) -> dict:
    """
    Move a plan slot through its state machine.

    DONE needs a DoD confirmation and evidence, each checked on its own.
    DROPPED needs a reason of at least *drop_reason_min_length* characters.
    """
    _require_open_plan(assessment)
    if status not in SLOT_STATUSES:
        raise ValidationError(f"status must be one of {sorted(SLOT_STATUSES)}",
                              code=E.INVALID_STATUS)
    slot = _get_slot(assessment, action_key)
    old = slot.status
    if status == old:
        return slot.to_dict()
    if not can_transition_slot(old, status):
        raise StateConflictError(f"Invalid transition: {old} → {status}",
                                 code=E.INVALID_TRANSITION)

    if status == "DONE":
        dod = _get_dod(assessment, action_key)
        action = catalog_service.find_action(action_key)
        required = set(action.done_when) if action else set()
        if dod is None or not required <= set(dod.confirmed_items):
            raise ValidationError("Confirm the Definition of Done before marking DONE",
                                  details={"dod_confirmed": False}, code=E.CHECKLIST_INCOMPLETE)
        if _get_evidence(assessment, action_key) is None:
            raise ValidationError("Record before/after evidence before marking DONE",
                                  details={"evidence_recorded": False}, code=E.EVIDENCE_REQUIRED)

    if status == "DROPPED":
        reason = (dropped_reason or "").strip() if isinstance(dropped_reason, str) else ""
        if len(reason) < max(1, drop_reason_min_length):
            raise ValidationError("A reason is required to drop an action",
                                  details={"min_length": max(1, drop_reason_min_length)},
                                  code=E.DROP_REASON_REQUIRED)
        slot.dropped_reason = reason

    try:
        slot.status = status
        write_audit(entity_type="plan_slot", entity_id=f"{assessment.id}:{action_key}",
                    action="plan_slot.status_change", actor=actor,
                    company_id=assessment.company_id,
                    diff={"status": {"old": old, "new": status}})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Action %s: %s → %s", action_key, old, status,
                extra=_log_extra(assessment, action_key=action_key))
    return slot.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Close / new cycle / new version
# ═════════════════════════════════════════════════════════════════════════════


def close_cycle(assessment: Assessment, actor: str | None = None) -> dict:
    """
    Close the cycle once every slot is DONE or DROPPED.

    Rewrites the snapshot with the final plan and evidence summary and
    returns the declared gains per slot.
    """
    _require_open_plan(assessment)
    slots = _current_slots(assessment)
    if len(slots) != PLAN_SIZE:
        raise ValidationError("Select a plan of 3 actions before closing the cycle",
                              details={"pending": []}, code=E.CYCLE_NOT_FINISHED)
    pending = [
        {"action_key": s.action_key, "position": s.position, "status": s.status}
        for s in slots if not s.is_terminal
    ]
    if pending:
        raise ValidationError("Every action must be DONE or DROPPED to close the cycle",
                              details={"pending": pending}, code=E.CYCLE_NOT_FINISHED)

    try:
        snapshot = SnapshotService.capture_on_close(assessment)
        _transition(assessment, "CLOSED")
        assessment.closed_at = _now()
        write_audit(entity_type="assessment", entity_id=assessment.id, action="assessment.close",
                    actor=actor, company_id=assessment.company_id,
                    diff={"status": {"old": "SUBMITTED", "new": "CLOSED"},
                          "cycle_no": assessment.cycle_no})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    evidence = {e["action_key"]: e for e in snapshot.to_dict()["evidence_summary"]}
    gains = [
        {
            "position": entry["position"],
            "action_key": entry["action_key"],
            "title": entry["title"],
            "status": entry["status"],
            "dropped_reason": entry["dropped_reason"],
            "declared_gain": evidence.get(entry["action_key"], {}).get("declared_gain"),
        }
        for entry in snapshot.plan
    ]
    logger.info("Cycle closed", extra=_log_extra(assessment))
    return {"assessment": assessment.to_dict(), "gains": gains}


def start_new_cycle(assessment: Assessment, actor: str | None = None) -> dict:
    """Archive the closed cycle's plan and reopen the plan branch."""
    if assessment.status != "CLOSED":
        raise StateConflictError("Close the current cycle before starting a new one",
                                 code=E.INVALID_TRANSITION)

    try:
        old_cycle = assessment.cycle_no
        for slot in _current_slots(assessment):
            evidence = _get_evidence(assessment, slot.action_key)
            db.session.add(CycleHistory(
                assessment_id=assessment.id,
                cycle_no=old_cycle,
                action_key=slot.action_key,
                process_key=slot.process_key,
                position=slot.position,
                status=slot.status,
                owner_name=slot.owner_name,
                metric_text=slot.metric_text,
                checkpoint_date=slot.checkpoint_date,
                dropped_reason=slot.dropped_reason,
                declared_gain=evidence.declared_gain if evidence else None,
            ))
            db.session.delete(slot)
        _transition(assessment, "SUBMITTED")
        assessment.cycle_no = old_cycle + 1
        assessment.closed_at = None
        write_audit(entity_type="assessment", entity_id=assessment.id,
                    action="assessment.new_cycle", actor=actor,
                    company_id=assessment.company_id,
                    diff={"cycle_no": {"old": old_cycle, "new": assessment.cycle_no}})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("New cycle started", extra=_log_extra(assessment))
    return {"assessment": assessment.to_dict(), "archived_cycle": old_cycle}


def list_cycle_history(assessment: Assessment) -> list[dict]:
    rows = db.session.execute(
        select(CycleHistory)
        .where(CycleHistory.assessment_id == assessment.id)
        .order_by(CycleHistory.cycle_no, CycleHistory.position)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def start_new_version(company_id: str, actor: str | None = None,
                      segment: str | None = None) -> tuple[Assessment, bool]:
    """
    Start a fresh diagnostic ("redo diagnosis") for the company.

    An existing DRAFT is returned as is.  A SUBMITTED assessment with an
    active plan blocks with ``DIAG_IN_PROGRESS``.  Older versions stay
    untouched for comparison.  Returns ``(assessment, created)``.
    """
    existing = _company_assessments(company_id)
    for assessment in existing:
        if assessment.status == "DRAFT":
            return assessment, False
    for assessment in existing:
        if assessment.status == "SUBMITTED" and _current_slots(assessment):
            raise StateConflictError(
                "Finish the current cycle before starting a new diagnostic",
                code=E.DIAG_IN_PROGRESS,
                details={"assessment_id": assessment.id},
            )

    if segment is not None and segment not in SEGMENTS:
        raise ValidationError(f"segment must be one of {sorted(SEGMENTS)}",
                              code=E.VALIDATION_INVALID)
    latest = existing[0] if existing else None
    max_version = db.session.execute(
        select(func.max(Assessment.full_version)).where(Assessment.company_id == company_id)
    ).scalar() or 0

    assessment = Assessment(
        company_id=company_id,
        segment=segment or (latest.segment if latest else "C"),
        full_version=max_version + 1,
        created_by=actor,
    )
    try:
        with db.session.begin_nested():
            db.session.add(assessment)
    except IntegrityError:
        # concurrent redo: the other request created the same version
        db.session.rollback()
        for existing_assessment in _company_assessments(company_id):
            if existing_assessment.status == "DRAFT":
                return existing_assessment, False
        raise
    write_audit(entity_type="assessment", entity_id=assessment.id,
                action="assessment.new_version", actor=actor, company_id=company_id,
                diff={"full_version": assessment.full_version,
                      "previous_assessment_id": latest.id if latest else None})
    _commit()
    logger.info("New diagnostic version", extra=_log_extra(assessment))
    return assessment, True


def list_versions(company_id: str) -> list[dict]:
    return [
        {**a.to_dict(), "has_snapshot": a.status != "DRAFT"}
        for a in _company_assessments(company_id)
    ]


def assessment_detail(assessment: Assessment) -> dict:
    scores = db.session.execute(
        select(ProcessScore)
        .where(ProcessScore.assessment_id == assessment.id)
        .order_by(ProcessScore.process_key)
    ).scalars().all()
    detail = assessment.to_dict()
    detail["scores"] = [
        {**s.to_dict(), "score_external": to_external_score(s.score_numeric)} for s in scores
    ]
    detail["completeness"] = _completeness(assessment) if assessment.status == "DRAFT" else None
    detail["pending_gaps"] = [g["gap_id"] for g in list_pending_gaps(assessment)]
    detail["plan"] = get_plan(assessment)
    return detail
