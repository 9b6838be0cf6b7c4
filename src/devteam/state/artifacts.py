from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from devteam.state.store import utcnow_iso, write_json_atomically

INDEX_FILE_NAME = "index.json"


class ArtifactPathError(ValueError):
    """Raised when an artifact reference would escape the artifacts root."""


@dataclass(frozen=True, slots=True)
class ArtifactRecord:
    phase: str
    name: str
    relative_path: str
    bytes: int
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "name": self.name,
            "relativePath": self.relative_path,
            "bytes": self.bytes,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactRecord:
        return cls(
            phase=str(data["phase"]),
            name=str(data["name"]),
            relative_path=str(data["relativePath"]),
            bytes=int(data["bytes"]),
            updated_at=str(data["updatedAt"]),
        )


def _normalize_relative(value: str, label: str) -> str:
    trimmed = value.strip().replace("\\", "/")
    if not trimmed:
        raise ArtifactPathError(f"Artifact {label} must not be empty.")
    normalized = posixpath.normpath(trimmed)
    if (
        posixpath.isabs(normalized)
        or normalized == ".."
        or normalized.startswith("../")
        or normalized == "."
    ):
        raise ArtifactPathError(f"Artifact {label} must be a relative path: {value}")
    return normalized


def _normalize_phase(value: str) -> str:
    normalized = _normalize_relative(value, "phase")
    if "/" in normalized:
        raise ArtifactPathError(f"Artifact phase must be a single path segment: {value}")
    return normalized


def _mtime_iso(path: Path) -> str:
    mtime = path.stat().st_mtime
    return (
        datetime.fromtimestamp(mtime, UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class ArtifactStore:
    """Write-once phase artifacts under ``<run_dir>/artifacts`` with a JSON index."""

    def __init__(self, run_dir: Path, *, enable_index: bool = True) -> None:
        self.root = (run_dir / "artifacts").resolve()
        self.index_path = self.root / INDEX_FILE_NAME
        self.enable_index = enable_index

    def _resolve(self, phase: str, name: str) -> tuple[Path, str, str, str]:
        normalized_phase = _normalize_phase(phase)
        normalized_name = _normalize_relative(name, "name")
        absolute = (self.root / normalized_phase / normalized_name).resolve()
        if not absolute.is_relative_to(self.root) or absolute == self.root:
            raise ArtifactPathError(f"Artifact path escapes the artifacts root: {absolute}")
        relative = absolute.relative_to(self.root).as_posix()
        return absolute, relative, normalized_phase, normalized_name

    def write(self, phase: str, name: str, content: str | bytes) -> ArtifactRecord:
        absolute, relative, normalized_phase, normalized_name = self._resolve(phase, name)
        if absolute.exists():
            raise ArtifactPathError(f"Artifact already exists: {relative}")
        absolute.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            absolute.write_bytes(content)
        else:
            absolute.write_text(content, encoding="utf-8")
        record = ArtifactRecord(
            phase=normalized_phase,
            name=normalized_name,
            relative_path=relative,
            bytes=absolute.stat().st_size,
            updated_at=_mtime_iso(absolute),
        )
        if self.enable_index:
            self._update_index(record)
        return record

    def read(self, phase: str, name: str) -> str:
        absolute, _, _, _ = self._resolve(phase, name)
        return absolute.read_text(encoding="utf-8")

    def list(self, phase: str | None = None) -> list[ArtifactRecord]:
        records = self._read_index() if self.enable_index else None
        if records is None:
            records = self._scan()
        if phase is not None:
            wanted = _normalize_phase(phase)
            records = [record for record in records if record.phase == wanted]
        return sorted(records, key=lambda record: record.relative_path)

    def _read_index(self) -> list[ArtifactRecord] | None:
        if not self.index_path.exists():
            return None
        try:
            payload = json.loads(self.index_path.read_text(encoding="utf-8"))
            items = payload.get("artifacts") if isinstance(payload, dict) else payload
            if not isinstance(items, list):
                return None
            return [ArtifactRecord.from_dict(item) for item in items]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    def _scan(self) -> list[ArtifactRecord]:
        if not self.root.exists():
            return []
        records: list[ArtifactRecord] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path == self.index_path:
                continue
            relative = path.relative_to(self.root).as_posix()
            phase, _, name = relative.partition("/")
            if not name or path.name.startswith(f".{INDEX_FILE_NAME}."):
                continue
            records.append(
                ArtifactRecord(
                    phase=phase,
                    name=name,
                    relative_path=relative,
                    bytes=path.stat().st_size,
                    updated_at=_mtime_iso(path),
                )
            )
        return records

    def _update_index(self, record: ArtifactRecord) -> None:
        current = self._read_index()
        if current is None:
            current = [item for item in self._scan() if item.relative_path != record.relative_path]
        by_path = {item.relative_path: item for item in current}
        by_path[record.relative_path] = record
        write_json_atomically(
            self.index_path,
            {
                "artifacts": [by_path[key].to_dict() for key in sorted(by_path)],
                "updatedAt": utcnow_iso(),
            },
        )
