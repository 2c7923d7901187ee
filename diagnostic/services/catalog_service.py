"""Catalog Store - load, validate and serve the diagnostic reference catalogs.

Three packaged documents live under ``diagnostic/data/catalogs``:

1. **Questionnaire** (``processes.json`` + ``questions.json``) - the 4 business
   processes and their 12 segment-tagged questions each.

2. **Action catalog** (``action_catalog.v1.json``) - per process, action items
   tagged with a maturity band and the answer *signals* they address.

3. **Cause catalog** (``cause_catalog.v1.json``) - root-cause classes and, per
   gap, the Likert cause-questions, scoring weights, tie-break order and the
   mechanism actions recommended for each cause.

Every document is structurally validated before first use.  All problems are
collected and raised together as one ``CatalogIntegrityError`` so a broken
catalog aborts startup instead of serving partial data.

Parsed catalogs are immutable dataclasses held in a process-wide cache guarded
by a lock.  ``clear_catalog_cache()`` exists for tests only.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flask import current_app, has_app_context

from diagnostic.core.exceptions import CatalogIntegrityError

logger = logging.getLogger(__name__)

# Directory where packaged JSON catalog files live.
_CATALOG_DIR = Path(__file__).parent.parent / "data" / "catalogs"

PROCESSES_FILE = "processes.json"
QUESTIONS_FILE = "questions.json"
ACTION_CATALOG_FILE = "action_catalog.v1.json"
CAUSE_CATALOG_FILE = "cause_catalog.v1.json"

ACTION_CATALOG_VERSION = "v1"

PROCESS_KEYS: tuple[str, ...] = ("COMERCIAL", "OPERACOES", "ADM_FIN", "GESTAO")
SEGMENTS: tuple[str, ...] = ("C", "I", "S")
BANDS: tuple[str, ...] = ("LOW", "MEDIUM", "HIGH")
DIMENSIONS: tuple[str, ...] = ("EXISTENCIA", "ROTINA", "DONO", "CONTROLE")
QUESTIONS_PER_PROCESS = 12

NIVEL_UI_TO_BAND = {
    "CRITICO": "LOW",
    "EM_AJUSTE": "MEDIUM",
    "SOB_CONTROLE": "HIGH",
}

LIKERT_OPTIONS: tuple[str, ...] = (
    "DISCORDO_PLENAMENTE",
    "DISCORDO",
    "NEUTRO",
    "CONCORDO",
    "CONCORDO_PLENAMENTE",
)

_CAUSE_ID_RE = re.compile(r"^CAUSE_[A-Z0-9_]+$")

RECOMMENDATION_FIELDS = ("title", "what_is_happening", "cost_of_not_acting", "change_in_30_days")


# ═════════════════════════════════════════════════════════════════════════════
# Value objects
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ProcessDefinition:
    process_key: str
    label: str
    segments: tuple[str, ...]
    protects_dimension: str
    owner_alert_text: str
    typical_impact_band: str
    typical_impact_text: str
    quick_win: bool

    def to_dict(self) -> dict:
        return {
            "process_key": self.process_key,
            "label": self.label,
            "protects_dimension": self.protects_dimension,
            "owner_alert_text": self.owner_alert_text,
            "typical_impact_band": self.typical_impact_band,
            "typical_impact_text": self.typical_impact_text,
            "quick_win": self.quick_win,
        }


@dataclass(frozen=True)
class Question:
    process_key: str
    question_key: str
    text: str
    dimension: str
    weight: int
    segments: tuple[str, ...]

    @property
    def signal_id(self) -> str:
        return f"{self.process_key}_{self.question_key}"

    def to_dict(self) -> dict:
        return {
            "process_key": self.process_key,
            "question_key": self.question_key,
            "text": self.text,
            "dimension": self.dimension,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class RecommendationText:
    title: str
    what_is_happening: str
    cost_of_not_acting: str
    change_in_30_days: str

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "what_is_happening": self.what_is_happening,
            "cost_of_not_acting": self.cost_of_not_acting,
            "change_in_30_days": self.change_in_30_days,
        }


@dataclass(frozen=True)
class CatalogAction:
    """An action a company can put in its plan.

    ``source`` is ``"fit"`` for action-catalog items (matched by signals) and
    ``"mechanism"`` for cause-specific actions from the cause catalog.
    """

    process_key: str
    band: str
    action_key: str
    title: str
    steps: tuple[str, ...]
    owner_suggested: str
    metric_suggested: str
    done_when: tuple[str, ...]
    required_signals: tuple[str, ...] = ()
    item_id: str | None = None
    recommendation: RecommendationText | None = None
    source: str = "fit"

    def to_dict(self) -> dict:
        return {
            "process_key": self.process_key,
            "band": self.band,
            "action_key": self.action_key,
            "title": self.title,
            "steps": list(self.steps),
            "owner_suggested": self.owner_suggested,
            "metric_suggested": self.metric_suggested,
            "done_when": list(self.done_when),
            "required_signals": list(self.required_signals),
            "item_id": self.item_id,
            "recommendation": self.recommendation.to_dict() if self.recommendation else None,
            "source": self.source,
        }


@dataclass(frozen=True)
class CauseClass:
    id: str
    label: str
    description: str
    primary_mechanism: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "primary_mechanism": self.primary_mechanism,
        }


@dataclass(frozen=True)
class CauseQuestion:
    q_id: str
    prompt: str
    type: str
    options: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"q_id": self.q_id, "prompt": self.prompt, "type": self.type,
                "options": list(self.options)}


@dataclass(frozen=True, eq=False)
class WeightRule:
    cause_id: str
    q_id: str
    points: dict[str, int]


@dataclass(frozen=True)
class MechanismAction:
    cause_id: str
    action_key: str
    title: str
    why: str
    first_step: str
    sort_order: int

    def to_dict(self) -> dict:
        return {
            "cause_id": self.cause_id,
            "action_key": self.action_key,
            "title": self.title,
            "why": self.why,
            "first_step": self.first_step,
            "sort_order": self.sort_order,
        }


@dataclass(frozen=True, eq=False)
class GapDefinition:
    gap_id: str
    process_key: str
    band: str
    client_title: str
    client_description: str
    cause_questions: tuple[CauseQuestion, ...]
    weights: tuple[WeightRule, ...]
    tie_breaker: tuple[str, ...]
    mechanism_actions: tuple[MechanismAction, ...]

    @property
    def question_ids(self) -> tuple[str, ...]:
        return tuple(q.q_id for q in self.cause_questions)

    def mechanism_actions_for(self, cause_id: str, limit: int = 3) -> list[MechanismAction]:
        """Mechanism actions of one cause, ordered by ``sort_order``, capped at *limit*."""
        matching = [m for m in self.mechanism_actions if m.cause_id == cause_id]
        matching.sort(key=lambda m: m.sort_order)
        return matching[:limit]

    def to_dict(self) -> dict:
        return {
            "gap_id": self.gap_id,
            "process_key": self.process_key,
            "band": self.band,
            "client_title": self.client_title,
            "client_description": self.client_description,
            "cause_questions": [q.to_dict() for q in self.cause_questions],
            "tie_breaker": list(self.tie_breaker),
        }


@dataclass(frozen=True, eq=False)
class QuestionCatalog:
    version: str
    processes: tuple[ProcessDefinition, ...]
    questions: tuple[Question, ...]

    def process(self, process_key: str) -> ProcessDefinition | None:
        return next((p for p in self.processes if p.process_key == process_key), None)

    def questions_for(self, segment: str, process_key: str | None = None) -> list[Question]:
        return [
            q for q in self.questions
            if segment in q.segments and (process_key is None or q.process_key == process_key)
        ]

    def question(self, process_key: str, question_key: str) -> Question | None:
        return next(
            (q for q in self.questions
             if q.process_key == process_key and q.question_key == question_key),
            None,
        )

    @property
    def signal_ids(self) -> frozenset[str]:
        return frozenset(q.signal_id for q in self.questions)


@dataclass(frozen=True, eq=False)
class ActionCatalog:
    version: str
    items: tuple[CatalogAction, ...]

    def items_for(self, process_key: str, band: str | None = None) -> list[CatalogAction]:
        """Items of a process (optionally one band) in catalog order."""
        return [
            i for i in self.items
            if i.process_key == process_key and (band is None or i.band == band)
        ]


@dataclass(frozen=True, eq=False)
class CauseCatalog:
    version: str
    cause_classes: tuple[CauseClass, ...]
    gaps: tuple[GapDefinition, ...]

    def cause(self, cause_id: str) -> CauseClass | None:
        return next((c for c in self.cause_classes if c.id == cause_id), None)

    def get_gap(self, gap_id: str) -> GapDefinition | None:
        return next((g for g in self.gaps if g.gap_id == gap_id), None)

    def gap_for(self, process_key: str, band: str) -> GapDefinition | None:
        return next(
            (g for g in self.gaps if g.process_key == process_key and g.band == band),
            None,
        )


# ═════════════════════════════════════════════════════════════════════════════
# Signals
# ═════════════════════════════════════════════════════════════════════════════


def signal_id(process_key: str, question_key: str) -> str:
    return f"{process_key}_{question_key}"


def parse_signal(signal: str) -> tuple[str, str] | None:
    """Split ``{process}_{question}`` using the known process prefixes.

    Process keys may themselves contain ``_`` (``ADM_FIN``), so a plain
    ``split("_")`` is wrong.
    """
    for pk in PROCESS_KEYS:
        prefix = f"{pk}_"
        if signal.startswith(prefix) and len(signal) > len(prefix):
            return pk, signal[len(prefix):]
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_question_catalog(processes_doc: Any, questions_doc: Any) -> list[str]:
    """Return every structural problem of the questionnaire documents."""
    errors: list[str] = []
    processes = processes_doc.get("processes") if isinstance(processes_doc, dict) else None
    questions = questions_doc.get("questions") if isinstance(questions_doc, dict) else None

    if not isinstance(processes, list):
        errors.append("processes: must be a list")
        processes = []
    if not isinstance(questions, list):
        errors.append("questions: must be a list")
        questions = []

    keys = [p.get("process_key") for p in processes if isinstance(p, dict)]
    if len(processes) != len(PROCESS_KEYS) or sorted(keys) != sorted(PROCESS_KEYS):
        errors.append(f"processes: expected exactly {list(PROCESS_KEYS)}, got {keys}")
    for p in processes:
        if not isinstance(p, dict):
            errors.append("processes: entries must be objects")
            continue
        pk = p.get("process_key")
        if not _non_empty_str(p.get("label")):
            errors.append(f"processes[{pk}]: label required")
        if not set(SEGMENTS) <= set(p.get("segment_applicability") or []):
            errors.append(f"processes[{pk}]: segment_applicability must include C, I, S")

    per_process: dict[str, set[str]] = {pk: set() for pk in PROCESS_KEYS}
    for q in questions:
        if not isinstance(q, dict):
            errors.append("questions: entries must be objects")
            continue
        pk, qk = q.get("process_key"), q.get("question_key")
        where = f"questions[{pk}/{qk}]"
        if pk not in per_process:
            errors.append(f"{where}: unknown process_key")
            continue
        if not _non_empty_str(qk):
            errors.append(f"{where}: question_key required")
            continue
        if qk in per_process[pk]:
            errors.append(f"{where}: duplicate question_key")
        per_process[pk].add(qk)
        if q.get("dimension") not in DIMENSIONS:
            errors.append(f"{where}: dimension must be one of {list(DIMENSIONS)}")
        if not _non_empty_str(q.get("text")):
            errors.append(f"{where}: text required")
        if not set(SEGMENTS) <= set(q.get("segment_applicability") or []):
            errors.append(f"{where}: segment_applicability must include C, I, S")

    for pk, qks in per_process.items():
        if len(qks) != QUESTIONS_PER_PROCESS:
            errors.append(
                f"questions[{pk}]: expected {QUESTIONS_PER_PROCESS} questions, got {len(qks)}"
            )
    return errors


def validate_action_catalog(doc: Any, known_signals: frozenset[str] | set[str]) -> list[str]:
    """Return every structural problem of the action catalog document."""
    errors: list[str] = []
    if not isinstance(doc, dict):
        return ["action catalog: root must be an object"]
    if doc.get("version") != ACTION_CATALOG_VERSION:
        errors.append(f"version: expected {ACTION_CATALOG_VERSION!r}, got {doc.get('version')!r}")

    processes = doc.get("processes")
    if not isinstance(processes, list) or len(processes) != len(PROCESS_KEYS):
        errors.append(f"processes: expected exactly {len(PROCESS_KEYS)} processes")
        processes = processes if isinstance(processes, list) else []

    seen_ids: set[str] = set()
    seen_processes: set[str] = set()
    for proc in processes:
        pk = proc.get("process_key") if isinstance(proc, dict) else None
        if pk not in PROCESS_KEYS:
            errors.append(f"processes: invalid process_key {pk!r}")
            continue
        if pk in seen_processes:
            errors.append(f"processes: duplicate process_key {pk!r}")
        seen_processes.add(pk)

        seen_action_keys: set[str] = set()
        for item in proc.get("items") or []:
            item_id = item.get("id")
            where = f"{pk}/{item_id}"
            if not _non_empty_str(item_id):
                errors.append(f"{pk}: item without id")
            elif item_id in seen_ids:
                errors.append(f"{where}: duplicate item id")
            seen_ids.add(item_id)

            band = item.get("band_backend")
            nivel = item.get("nivel_ui")
            if nivel not in NIVEL_UI_TO_BAND:
                errors.append(f"{where}: invalid nivel_ui {nivel!r}")
            elif NIVEL_UI_TO_BAND[nivel] != band:
                errors.append(f"{where}: nivel_ui {nivel} inconsistent with band_backend {band}")
            if band not in BANDS:
                errors.append(f"{where}: invalid band_backend {band!r}")

            signals = item.get("signals")
            if not isinstance(signals, list) or not 3 <= len(signals) <= 5:
                errors.append(f"{where}: signals must have 3 to 5 entries")
            else:
                if len(set(signals)) != len(signals):
                    errors.append(f"{where}: duplicate signals")
                for sig in signals:
                    if sig not in known_signals:
                        errors.append(f"{where}: unknown signal {sig!r}")

            rec = item.get("recommendation")
            if not isinstance(rec, dict):
                errors.append(f"{where}: recommendation required")
            else:
                for fld in RECOMMENDATION_FIELDS:
                    if not _non_empty_str(rec.get(fld)):
                        errors.append(f"{where}: recommendation.{fld} required")

            action = item.get("action")
            if not isinstance(action, dict):
                errors.append(f"{where}: action required")
                continue
            action_key = action.get("action_key")
            if not _non_empty_str(action_key):
                errors.append(f"{where}: action.action_key required")
            elif action_key in seen_action_keys:
                errors.append(f"{where}: duplicate action_key {action_key!r} in {pk}")
            seen_action_keys.add(action_key)
            for fld in ("title", "owner_suggested", "metric_suggested"):
                if not _non_empty_str(action.get(fld)):
                    errors.append(f"{where}: action.{fld} required")
            steps = action.get("steps_3")
            if not isinstance(steps, list) or len(steps) != 3 or not all(map(_non_empty_str, steps)):
                errors.append(f"{where}: action.steps_3 must have exactly 3 non-empty steps")
            done_when = action.get("done_when")
            if (not isinstance(done_when, list) or not 2 <= len(done_when) <= 5
                    or not all(map(_non_empty_str, done_when))):
                errors.append(f"{where}: action.done_when must have 2 to 5 non-empty items")
    return errors


def validate_cause_catalog(doc: Any) -> list[str]:
    """Return every structural problem of the cause catalog document."""
    errors: list[str] = []
    if not isinstance(doc, dict):
        return ["cause catalog: root must be an object"]
    if not _non_empty_str(doc.get("version")):
        errors.append("version: must be a non-empty string")

    cause_ids: set[str] = set()
    for c in doc.get("cause_classes") or []:
        cid = c.get("id") if isinstance(c, dict) else None
        if not isinstance(cid, str) or not _CAUSE_ID_RE.match(cid):
            errors.append(f"cause_classes: invalid id {cid!r}")
            continue
        if cid in cause_ids:
            errors.append(f"cause_classes: duplicate id {cid!r}")
        cause_ids.add(cid)
        for fld in ("label", "description", "primary_mechanism"):
            if not _non_empty_str(c.get(fld)):
                errors.append(f"cause_classes[{cid}]: {fld} required")
    if not cause_ids:
        errors.append("cause_classes: at least one cause class required")

    gap_ids: set[str] = set()
    process_bands: set[tuple[str, str]] = set()
    for g in doc.get("gaps") or []:
        gid = g.get("gap_id") if isinstance(g, dict) else None
        if not _non_empty_str(gid):
            errors.append("gaps: gap without gap_id")
            continue
        if gid in gap_ids:
            errors.append(f"gaps: duplicate gap_id {gid!r}")
        gap_ids.add(gid)

        pk, band = g.get("process_key"), g.get("band")
        if pk not in PROCESS_KEYS or band not in BANDS:
            errors.append(f"gaps[{gid}]: invalid process_key/band {pk!r}/{band!r}")
        elif (pk, band) in process_bands:
            errors.append(f"gaps[{gid}]: second gap for {pk}/{band}")
        process_bands.add((pk, band))
        if not _non_empty_str(g.get("client_title")):
            errors.append(f"gaps[{gid}]: client_title required")

        q_ids: set[str] = set()
        questions = g.get("cause_questions")
        if not isinstance(questions, list) or not questions:
            errors.append(f"gaps[{gid}]: cause_questions required")
            questions = []
        for q in questions:
            qid = q.get("q_id")
            if not _non_empty_str(qid):
                errors.append(f"gaps[{gid}]: cause question without q_id")
                continue
            q_ids.add(qid)
            if q.get("type") != "LIKERT_5":
                errors.append(f"gaps[{gid}].{qid}: type must be LIKERT_5")
            if not isinstance(q.get("options"), list) or not q.get("options"):
                errors.append(f"gaps[{gid}].{qid}: options must be a non-empty list")

        for w in g.get("weights") or []:
            if w.get("cause_id") not in cause_ids:
                errors.append(f"gaps[{gid}]: weight for unknown cause {w.get('cause_id')!r}")
            if w.get("q_id") not in q_ids:
                errors.append(f"gaps[{gid}]: weight for unknown question {w.get('q_id')!r}")
            if not isinstance(w.get("map"), dict):
                errors.append(f"gaps[{gid}]: weight map must be an object")

        for cid in g.get("tie_breaker") or []:
            if cid not in cause_ids:
                errors.append(f"gaps[{gid}]: tie_breaker references unknown cause {cid!r}")

        for m in g.get("mechanism_actions") or []:
            if not _non_empty_str(m.get("action_key")):
                errors.append(f"gaps[{gid}]: mechanism action without action_key")
            if m.get("cause_id") not in cause_ids:
                errors.append(f"gaps[{gid}]: mechanism action for unknown cause {m.get('cause_id')!r}")
            for fld in ("title", "why", "first_step"):
                if not _non_empty_str(m.get(fld)):
                    errors.append(f"gaps[{gid}]: mechanism action {m.get('action_key')!r} {fld} required")
    return errors


# ═════════════════════════════════════════════════════════════════════════════
# Parsing (validated documents only)
# ═════════════════════════════════════════════════════════════════════════════


def parse_question_catalog(processes_doc: dict, questions_doc: dict) -> QuestionCatalog:
    processes = tuple(
        ProcessDefinition(
            process_key=p["process_key"],
            label=p["label"],
            segments=tuple(p.get("segment_applicability") or SEGMENTS),
            protects_dimension=p.get("protects_dimension", ""),
            owner_alert_text=p.get("owner_alert_text", ""),
            typical_impact_band=p.get("typical_impact_band", "MEDIO"),
            typical_impact_text=p.get("typical_impact_text", ""),
            quick_win=bool(p.get("quick_win", False)),
        )
        for p in processes_doc["processes"]
    )
    questions = tuple(
        Question(
            process_key=q["process_key"],
            question_key=q["question_key"],
            text=q["text"],
            dimension=q["dimension"],
            weight=int(q.get("weight", 1)),
            segments=tuple(q.get("segment_applicability") or SEGMENTS),
        )
        for q in questions_doc["questions"]
    )
    return QuestionCatalog(version=str(questions_doc.get("version", "v1")),
                           processes=processes, questions=questions)


def parse_action_catalog(doc: dict) -> ActionCatalog:
    items: list[CatalogAction] = []
    for proc in doc["processes"]:
        for item in proc.get("items") or []:
            action = item["action"]
            items.append(CatalogAction(
                process_key=proc["process_key"],
                band=item["band_backend"],
                action_key=action["action_key"],
                title=action["title"],
                steps=tuple(action["steps_3"]),
                owner_suggested=action["owner_suggested"],
                metric_suggested=action["metric_suggested"],
                done_when=tuple(action["done_when"]),
                required_signals=tuple(item["signals"]),
                item_id=item["id"],
                recommendation=RecommendationText(
                    **{f: item["recommendation"][f] for f in RECOMMENDATION_FIELDS}
                ),
            ))
    return ActionCatalog(version=doc["version"], items=tuple(items))


def parse_cause_catalog(doc: dict) -> CauseCatalog:
    causes = tuple(
        CauseClass(c["id"], c["label"], c["description"], c["primary_mechanism"])
        for c in doc["cause_classes"]
    )
    gaps = []
    for g in doc.get("gaps") or []:
        gaps.append(GapDefinition(
            gap_id=g["gap_id"],
            process_key=g["process_key"],
            band=g["band"],
            client_title=g["client_title"],
            client_description=g.get("client_description", ""),
            cause_questions=tuple(
                CauseQuestion(q["q_id"], q.get("prompt", ""), q["type"], tuple(q["options"]))
                for q in g["cause_questions"]
            ),
            weights=tuple(
                WeightRule(w["cause_id"], w["q_id"], dict(w["map"]))
                for w in g.get("weights") or []
            ),
            tie_breaker=tuple(g.get("tie_breaker") or ()),
            mechanism_actions=tuple(
                MechanismAction(
                    cause_id=m["cause_id"],
                    action_key=m["action_key"],
                    title=m["title"],
                    why=m["why"],
                    first_step=m["first_step"],
                    sort_order=int(m.get("sort_order", 0)),
                )
                for m in g.get("mechanism_actions") or []
            ),
        ))
    return CauseCatalog(version=doc["version"], cause_classes=causes, gaps=tuple(gaps))


# ═════════════════════════════════════════════════════════════════════════════
# Loading & cache
# ═════════════════════════════════════════════════════════════════════════════

_catalog_cache: dict[str, Any] = {}
_cache_lock = threading.Lock()


def _catalog_dir() -> Path:
    if has_app_context():
        override = current_app.config.get("CATALOG_DIR")
        if override:
            return Path(override)
    return _CATALOG_DIR


def _read_json(directory: Path, filename: str) -> Any:
    path = directory / filename
    try:
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError as exc:
        raise CatalogIntegrityError([f"file not found: {path}"], source=filename) from exc
    except json.JSONDecodeError as exc:
        raise CatalogIntegrityError([f"invalid JSON: {exc}"], source=filename) from exc


def _load_uncached(directory: Path) -> dict[str, Any]:
    processes_doc = _read_json(directory, PROCESSES_FILE)
    questions_doc = _read_json(directory, QUESTIONS_FILE)
    errors = validate_question_catalog(processes_doc, questions_doc)
    if errors:
        raise CatalogIntegrityError(errors, source=QUESTIONS_FILE)
    questions = parse_question_catalog(processes_doc, questions_doc)

    action_doc = _read_json(directory, ACTION_CATALOG_FILE)
    errors = validate_action_catalog(action_doc, questions.signal_ids)
    if errors:
        raise CatalogIntegrityError(errors, source=ACTION_CATALOG_FILE)

    cause_doc = _read_json(directory, CAUSE_CATALOG_FILE)
    errors = validate_cause_catalog(cause_doc)
    if errors:
        raise CatalogIntegrityError(errors, source=CAUSE_CATALOG_FILE)

    return {
        "questions": questions,
        "actions": parse_action_catalog(action_doc),
        "causes": parse_cause_catalog(cause_doc),
    }


def load_all_catalogs(directory: Path | str | None = None) -> dict[str, Any]:
    """Load, validate and cache every catalog.  Raises ``CatalogIntegrityError``."""
    with _cache_lock:
        if not _catalog_cache:
            target = Path(directory) if directory else _catalog_dir()
            _catalog_cache.update(_load_uncached(target))
            logger.info(
                "Catalogs loaded from %s: %d actions, %d gaps, cause catalog %s",
                target,
                len(_catalog_cache["actions"].items),
                len(_catalog_cache["causes"].gaps),
                _catalog_cache["causes"].version,
            )
        return dict(_catalog_cache)


def clear_catalog_cache() -> None:
    """Drop every cached catalog (tests only)."""
    with _cache_lock:
        _catalog_cache.clear()


def get_question_catalog() -> QuestionCatalog:
    return load_all_catalogs()["questions"]


def get_action_catalog() -> ActionCatalog:
    return load_all_catalogs()["actions"]


def get_cause_catalog() -> CauseCatalog:
    return load_all_catalogs()["causes"]


def get_gap(gap_id: str) -> GapDefinition | None:
    return get_cause_catalog().get_gap(gap_id)


def gap_for(process_key: str, band: str) -> GapDefinition | None:
    """Return the gap a process/band maps to, if any."""
    return get_cause_catalog().gap_for(process_key, band)


def process_label(process_key: str) -> str:
    proc = get_question_catalog().process(process_key)
    return proc.label if proc else process_key


def find_action(action_key: str) -> CatalogAction | None:
    """Look an action up by key in the action catalog, then in mechanism actions.

    Mechanism actions carry no separate checklist; their Definition of Done
    is their first step.
    """
    for item in get_action_catalog().items:
        if item.action_key == action_key:
            return item
    for gap in get_cause_catalog().gaps:
        for mech in gap.mechanism_actions:
            if mech.action_key == action_key:
                return CatalogAction(
                    process_key=gap.process_key,
                    band=gap.band,
                    action_key=mech.action_key,
                    title=mech.title,
                    steps=(mech.first_step,),
                    owner_suggested="",
                    metric_suggested="",
                    done_when=(mech.first_step,),
                    source="mechanism",
                )
    return None
