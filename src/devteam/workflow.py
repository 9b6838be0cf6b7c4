from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

from devteam.config import ParseError
from devteam.state.store import RUN_STATUSES, RunStatus

PhaseType = Literal["llm", "approval"]
Decision = Literal["pass", "fix", "ask"]
DecisionSource = Literal["output_tag"]

DEFAULT_MAX_STEPS = 20

DECISION_TAG_PATTERN = re.compile(r"DECISION\s*:\s*(PASS|FIX|ASK)\b", re.IGNORECASE)
ASK_MARKER_PATTERN = re.compile(r"\[ASK\]", re.IGNORECASE)
FIX_MARKER_PATTERN = re.compile(r"\[(?:FIX|FAIL)\]", re.IGNORECASE)

_TOP_LEVEL_KEYS = {"name", "entry_phase", "max_steps", "phases"}
_LLM_KEYS = {
    "id",
    "type",
    "role",
    "provider",
    "system_prompt",
    "system_prompt_file",
    "prompt_template",
    "next",
    "decision_source",
    "next_on_pass",
    "next_on_fix",
    "next_on_ask",
    "terminal_status",
}
_APPROVAL_KEYS = {
    "id",
    "type",
    "prompt_template",
    "next_on_approve",
    "next_on_reject",
    "terminal_status",
}


class WorkflowParseError(ParseError):
    """Raised when a workflow document is malformed."""


@dataclass(frozen=True, slots=True)
class LlmPhase:
    id: str
    role: str
    prompt_template: str
    provider: str | None = None
    system_prompt: str | None = None
    system_prompt_file: str | None = None
    next: str | None = None
    decision_source: DecisionSource | None = None
    next_on_pass: str | None = None
    next_on_fix: str | None = None
    next_on_ask: str | None = None
    terminal_status: RunStatus | None = None
    type: PhaseType = "llm"

    def transitions(self) -> dict[str, str | None]:
        return {
            "next": self.next,
            "next_on_pass": self.next_on_pass,
            "next_on_fix": self.next_on_fix,
            "next_on_ask": self.next_on_ask,
        }


@dataclass(frozen=True, slots=True)
class ApprovalPhase:
    id: str
    prompt_template: str
    next_on_approve: str | None = None
    next_on_reject: str | None = None
    terminal_status: RunStatus | None = None
    type: PhaseType = "approval"

    def transitions(self) -> dict[str, str | None]:
        return {
            "next_on_approve": self.next_on_approve,
            "next_on_reject": self.next_on_reject,
        }


WorkflowPhase = LlmPhase | ApprovalPhase


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    name: str
    entry_phase: str
    max_steps: int
    phases: tuple[WorkflowPhase, ...]

    def phase(self, phase_id: str) -> WorkflowPhase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)

    def find_phase_by_role(self, role: str) -> str | None:
        wanted = role.strip().lower()
        for phase in self.phases:
            if isinstance(phase, LlmPhase) and phase.role.strip().lower() == wanted:
                return phase.id
        return None


def parse_decision(text: str, *, default: Decision = "pass") -> Decision:
    """Classify free text into a three-way decision.

    An explicit ``DECISION: PASS|FIX|ASK`` tag wins, then the bracket markers
    ``[ASK]`` and ``[FIX]``/``[FAIL]``; anything else yields ``default``.
    """
    explicit = DECISION_TAG_PATTERN.search(text)
    if explicit:
        return explicit.group(1).lower()  # type: ignore[return-value]
    if ASK_MARKER_PATTERN.search(text):
        return "ask"
    if FIX_MARKER_PATTERN.search(text):
        return "fix"
    return default


def has_decision_marker(text: str) -> bool:
    return bool(
        DECISION_TAG_PATTERN.search(text)
        or ASK_MARKER_PATTERN.search(text)
        or FIX_MARKER_PATTERN.search(text)
    )


def _optional_str(entry: dict[str, Any], key: str, label: str) -> str | None:
    value = entry.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise WorkflowParseError(f"{label}.{key} must be a string.")
    normalized = str(value).strip()
    return normalized or None


def _required_str(entry: dict[str, Any], key: str, label: str) -> str:
    value = _optional_str(entry, key, label)
    if not value:
        raise WorkflowParseError(f"{label}.{key} is required.")
    return value


def _terminal_status(entry: dict[str, Any], label: str) -> RunStatus | None:
    value = _optional_str(entry, "terminal_status", label)
    if value is None:
        return None
    if value not in RUN_STATUSES:
        raise WorkflowParseError(f"Unsupported terminal_status for {label}: {value}")
    return value  # type: ignore[return-value]


def _parse_phase(entry: Any, index: int) -> WorkflowPhase:
    if not isinstance(entry, dict):
        raise WorkflowParseError(f"phases[{index}] must be a mapping.")
    phase_id = _required_str(entry, "id", f"phases[{index}]")
    label = f"phases[{phase_id}]"
    phase_type = _optional_str(entry, "type", label) or "llm"

    if phase_type == "approval":
        unknown = sorted(set(entry) - _APPROVAL_KEYS)
        if unknown:
            raise WorkflowParseError(f"Unknown keys in {label}: {', '.join(unknown)}")
        return ApprovalPhase(
            id=phase_id,
            prompt_template=_required_str(entry, "prompt_template", label),
            next_on_approve=_optional_str(entry, "next_on_approve", label),
            next_on_reject=_optional_str(entry, "next_on_reject", label),
            terminal_status=_terminal_status(entry, label),
        )

    if phase_type != "llm":
        raise WorkflowParseError(f"Unsupported phase type for {label}: {phase_type}")

    unknown = sorted(set(entry) - _LLM_KEYS)
    if unknown:
        raise WorkflowParseError(f"Unknown keys in {label}: {', '.join(unknown)}")

    decision_source = _optional_str(entry, "decision_source", label)
    if decision_source is not None and decision_source != "output_tag":
        raise WorkflowParseError(f"Unsupported decision_source for {label}: {decision_source}")

    system_prompt = entry.get("system_prompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise WorkflowParseError(f"{label}.system_prompt must be a string.")

    return LlmPhase(
        id=phase_id,
        role=_required_str(entry, "role", label),
        prompt_template=_required_str(entry, "prompt_template", label),
        provider=_optional_str(entry, "provider", label),
        system_prompt=system_prompt or None,
        system_prompt_file=_optional_str(entry, "system_prompt_file", label),
        next=_optional_str(entry, "next", label),
        decision_source=decision_source,  # type: ignore[arg-type]
        next_on_pass=_optional_str(entry, "next_on_pass", label),
        next_on_fix=_optional_str(entry, "next_on_fix", label),
        next_on_ask=_optional_str(entry, "next_on_ask", label),
        terminal_status=_terminal_status(entry, label),
    )


def _parse_max_steps(raw: Any) -> int:
    if raw is None:
        return DEFAULT_MAX_STEPS
    if isinstance(raw, bool):
        raise WorkflowParseError(f"max_steps must be a positive integer: {raw}")
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise WorkflowParseError(f"max_steps must be a positive integer: {raw}") from exc
    if value <= 0:
        raise WorkflowParseError(f"max_steps must be a positive integer: {raw}")
    return value


def parse_workflow(text: str) -> WorkflowDefinition:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WorkflowParseError(f"Workflow is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise WorkflowParseError("Workflow document must be a mapping.")

    unknown = sorted(set(document) - _TOP_LEVEL_KEYS)
    if unknown:
        raise WorkflowParseError(f"Unknown workflow keys: {', '.join(unknown)}")

    name = _required_str(document, "name", "workflow")
    raw_phases = document.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise WorkflowParseError("workflow.phases must be a non-empty list.")

    phases = tuple(_parse_phase(entry, index) for index, entry in enumerate(raw_phases))
    phase_ids: set[str] = set()
    for phase in phases:
        if phase.id in phase_ids:
            raise WorkflowParseError(f"Duplicate phase id: {phase.id}")
        phase_ids.add(phase.id)

    entry_phase = _optional_str(document, "entry_phase", "workflow") or phases[0].id
    if entry_phase not in phase_ids:
        raise WorkflowParseError(f"entry_phase is not a defined phase: {entry_phase}")

    for phase in phases:
        for field_name, target in phase.transitions().items():
            if target and target not in phase_ids:
                raise WorkflowParseError(
                    f"Transition target does not exist: {phase.id}.{field_name} -> {target}"
                )

    return WorkflowDefinition(
        name=name,
        entry_phase=entry_phase,
        max_steps=_parse_max_steps(document.get("max_steps")),
        phases=phases,
    )


def load_workflow(path: Path) -> WorkflowDefinition:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise WorkflowParseError(f"Cannot read workflow file {path}: {exc}") from exc
    return parse_workflow(text)
