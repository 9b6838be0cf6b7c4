from __future__ import annotations

import copy
import json
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

RunStatus = Literal[
    "created",
    "running",
    "awaiting_approval",
    "awaiting_input",
    "completed",
    "failed",
    "canceled",
]
PhaseStatus = Literal["pending", "running", "completed", "failed", "skipped"]

RUN_STATUSES: frozenset[str] = frozenset(
    {
        "created",
        "running",
        "awaiting_approval",
        "awaiting_input",
        "completed",
        "failed",
        "canceled",
    }
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "canceled", "awaiting_input"})
STATE_FILE_NAME = "current-run.json"


class StateValidationError(RuntimeError):
    """Raised when a run state violates its invariants. Such a state is never written."""


class StateNotFoundError(RuntimeError):
    """Raised when updating a run state that does not exist yet."""


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def write_json_atomically(path: Path, payload: Any) -> None:
    """Write JSON through a sibling temp file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / (
        f".{path.name}.{os.getpid()}.{int(time.time() * 1000)}.{uuid4().hex}.tmp"
    )
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


@dataclass(slots=True)
class PhaseState:
    id: str
    status: PhaseStatus = "pending"
    started_at: str | None = None
    updated_at: str | None = None
    artifacts: list[str] = field(default_factory=list)
    error: str | None = None

    def mark_running(self) -> None:
        now = utcnow_iso()
        self.status = "running"
        self.started_at = self.started_at or now
        self.updated_at = now
        self.error = None

    def mark_completed(self) -> None:
        self.status = "completed"
        self.updated_at = utcnow_iso()
        self.error = None

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.updated_at = utcnow_iso()
        self.error = message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "status": self.status}
        if self.started_at:
            payload["startedAt"] = self.started_at
        if self.updated_at:
            payload["updatedAt"] = self.updated_at
        if self.artifacts:
            payload["artifacts"] = list(self.artifacts)
        if self.error:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        return cls(
            id=data.get("id", ""),
            status=data.get("status", ""),
            started_at=data.get("startedAt"),
            updated_at=data.get("updatedAt"),
            artifacts=list(data.get("artifacts") or []),
            error=data.get("error"),
        )


@dataclass(slots=True)
class RunState:
    status: RunStatus = "created"
    current_phase: str | None = None
    phases: list[PhaseState] = field(default_factory=list)
    retries: int = 0
    started_at: str = field(default_factory=utcnow_iso)
    updated_at: str = ""
    artifacts: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.started_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES and self.current_phase is None

    def phase(self, phase_id: str) -> PhaseState:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise StateValidationError(f"Phase is not tracked in run state: {phase_id}")

    def add_artifact(self, phase_id: str, relative_path: str) -> None:
        self.artifacts.setdefault(phase_id, []).append(relative_path)
        self.phase(phase_id).artifacts.append(relative_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "current_phase": self.current_phase,
            "phases": [phase.to_dict() for phase in self.phases],
            "retries": self.retries,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "artifacts": {phase: list(paths) for phase, paths in self.artifacts.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        if not isinstance(data, dict):
            raise StateValidationError("Run state must be a JSON object.")
        phases = data.get("phases")
        if not isinstance(phases, list) or not all(isinstance(item, dict) for item in phases):
            raise StateValidationError("state.phases must be a list of objects.")
        artifacts = data.get("artifacts", {})
        if not isinstance(artifacts, dict):
            raise StateValidationError("state.artifacts must be an object.")
        state = cls(
            status=data.get("status", ""),
            current_phase=data.get("current_phase"),
            phases=[PhaseState.from_dict(item) for item in phases],
            retries=data.get("retries", 0),
            started_at=data.get("startedAt") or utcnow_iso(),
            updated_at=data.get("updatedAt") or "",
            artifacts={str(key): value for key, value in artifacts.items()},
        )
        validate_run_state(state)
        return state


def validate_run_state(state: RunState) -> None:
    if not state.status or not isinstance(state.status, str):
        raise StateValidationError("state.status is required.")
    if state.status not in RUN_STATUSES:
        raise StateValidationError(f"Unsupported run status: {state.status}")
    if (
        isinstance(state.retries, bool)
        or not isinstance(state.retries, int)
        or state.retries < 0
    ):
        raise StateValidationError("state.retries must be a non-negative integer.")
    if state.current_phase is not None and not isinstance(state.current_phase, str):
        raise StateValidationError("state.current_phase must be a string or null.")
    if not isinstance(state.phases, list):
        raise StateValidationError("state.phases must be a list.")
    for phase in state.phases:
        if not isinstance(phase, PhaseState) or not phase.id:
            raise StateValidationError("state.phases[].id is required.")
        if not phase.status:
            raise StateValidationError(f"state.phases[{phase.id}].status is required.")
    if not state.started_at or not state.updated_at:
        raise StateValidationError("state.startedAt and state.updatedAt are required.")
    if not isinstance(state.artifacts, dict):
        raise StateValidationError("state.artifacts must be a mapping.")
    for phase_id, paths in state.artifacts.items():
        if not phase_id:
            raise StateValidationError("state.artifacts keys must not be empty.")
        if not isinstance(paths, list) or not all(isinstance(item, str) for item in paths):
            raise StateValidationError("state.artifacts values must be lists of strings.")


class StateStore:
    """Single JSON snapshot of one run, replaced atomically on every write."""

    def __init__(self, run_dir: Path, *, file_name: str = STATE_FILE_NAME) -> None:
        self.run_dir = run_dir
        self.path = run_dir / file_name

    def load(self) -> RunState | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateValidationError(f"Run state is not valid JSON: {self.path}") from exc
        return RunState.from_dict(payload)

    def save(self, state: RunState, *, touch: bool = True) -> RunState:
        if touch:
            state.updated_at = utcnow_iso()
        validate_run_state(state)
        write_json_atomically(self.path, state.to_dict())
        return state

    def update(
        self,
        transform: Callable[[RunState], RunState],
        *,
        create_if_missing: bool = False,
        initial_state: RunState | None = None,
    ) -> RunState:
        current = self.load()
        if current is None:
            if not create_if_missing:
                raise StateNotFoundError(f"Run state does not exist: {self.path}")
            current = initial_state if initial_state is not None else RunState()

        updated = transform(copy.deepcopy(current))
        if not isinstance(updated, RunState):
            raise StateValidationError("State transform must return a RunState.")
        return self.save(updated)
