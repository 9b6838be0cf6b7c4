from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Literal

from devteam.state.store import utcnow_iso

RunLogLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]


class RunLogError(ValueError):
    """Raised when a log target would escape the logs directory."""


def _normalize_segment(value: str, label: str) -> str:
    normalized = re.sub(r"\s+", "-", value.strip())
    if not normalized:
        raise RunLogError(f"Log {label} must not be empty.")
    if "/" in normalized or "\\" in normalized or ".." in normalized:
        raise RunLogError(f"Log {label} must not contain path separators: {value}")
    return normalized


class RunLogger:
    """Append-only per-source log files under ``<run_dir>/logs``."""

    def __init__(self, run_dir: Path) -> None:
        self.logs_dir = run_dir / "logs"

    def path_for(self, source: str, phase: str | None = None) -> Path:
        source_name = _normalize_segment(source, "source")
        if phase:
            return self.logs_dir / f"{source_name}-{_normalize_segment(phase, 'phase')}.log"
        return self.logs_dir / f"{source_name}.log"

    def append(
        self,
        source: str,
        message: str,
        *,
        phase: str | None = None,
        level: RunLogLevel = "INFO",
        context: dict[str, Any] | None = None,
    ) -> None:
        line = f"[{utcnow_iso()}] [{level}] {message}"
        if context:
            line += " " + json.dumps(context, ensure_ascii=False, default=str)
        path = self.path_for(source, phase)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read(self, source: str, phase: str | None = None) -> str:
        return self.path_for(source, phase).read_text(encoding="utf-8")
