from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

PatchSource = Literal["diff_code_block", "patch_code_block", "patch_section"]
ExtractionFailure = Literal["not_found", "invalid_format", "path_violation"]
ApplyFailure = Literal[
    "context_mismatch",
    "invalid_patch",
    "not_git_repository",
    "path_violation",
    "timeout",
    "unknown",
]

DEFAULT_GIT_TIMEOUT_SECONDS = 15.0

FENCED_BLOCK_PATTERN = re.compile(r"```([^\n`]*)\n(.*?)```", re.DOTALL)
PATCH_SECTION_PATTERN = re.compile(r"^###\s*PATCH\b", re.IGNORECASE)
NEXT_SECTION_PATTERN = re.compile(r"^###\s+\S")
PATCH_MARKER_PATTERN = re.compile(r"\[PATCH_BEGIN\]\s*(.*?)\s*\[PATCH_END\]", re.DOTALL)
DIFF_GIT_HEADER_PATTERN = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_HEADER_SIDE = r'("(?:[^"\\]|\\.)*"|\S+)'
QUOTED_DIFF_GIT_HEADER_PATTERN = re.compile(rf"^diff --git {_HEADER_SIDE} {_HEADER_SIDE}$")
RENAME_COPY_PATTERN = re.compile(r"^(?:rename|copy) (?:from|to) (.*)$")
QUOTED_ESCAPE_PATTERN = re.compile(r'\\(["\\abfnrtv]|[0-7]{3})|\\')
_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}


class PatchExtractionError(RuntimeError):
    """Raised when model output does not carry a usable unified diff."""

    def __init__(self, message: str, *, reason: ExtractionFailure) -> None:
        super().__init__(message)
        self.reason = reason


class PatchApplyError(RuntimeError):
    """Raised when ``git apply`` (or a follow-up ``git diff``) fails."""

    def __init__(
        self,
        message: str,
        *,
        reason: ApplyFailure,
        stderr: str = "",
        command: list[str] | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.stderr = stderr
        self.command = command or []
        self.exit_code = exit_code


@dataclass(frozen=True, slots=True)
class ExtractedPatch:
    patch: str
    source: PatchSource


@dataclass(frozen=True, slots=True)
class CapturedDiff:
    diff_stat: str
    diff: str


def _find_fenced_block(text: str, language: str) -> str | None:
    for match in FENCED_BLOCK_PATTERN.finditer(text):
        label = match.group(1).strip().lower().split()
        if label and label[0] == language:
            return match.group(2)
    return None


def _find_patch_section(text: str) -> str | None:
    lines = text.splitlines()
    for start, line in enumerate(lines):
        if PATCH_SECTION_PATTERN.match(line.strip()):
            break
    else:
        return None

    collected: list[str] = []
    for line in lines[start + 1 :]:
        if NEXT_SECTION_PATTERN.match(line.strip()):
            break
        collected.append(line)
    return "\n".join(collected)


def _trim_blank_lines(value: str) -> str:
    value = re.sub(r"\A\s*\n", "", value)
    return re.sub(r"\n\s*\Z", "", value)


def _normalize_patch_text(raw: str) -> str:
    normalized = _trim_blank_lines(raw)
    if not normalized.strip():
        raise PatchExtractionError("Patch payload is empty.", reason="invalid_format")
    marked = PATCH_MARKER_PATTERN.search(normalized)
    if marked:
        normalized = _trim_blank_lines(marked.group(1))
        if not normalized.strip():
            raise PatchExtractionError(
                "Patch payload between [PATCH_BEGIN] and [PATCH_END] is empty.",
                reason="invalid_format",
            )
    return normalized


def _assert_patch_shape(patch: str) -> None:
    if re.search(r"^diff --git\s+", patch, re.MULTILINE):
        return
    if (
        re.search(r"^---\s+", patch, re.MULTILINE)
        and re.search(r"^\+\+\+\s+", patch, re.MULTILINE)
        and re.search(r"^@@\s+", patch, re.MULTILINE)
    ):
        return
    raise PatchExtractionError("Payload is not a unified diff.", reason="invalid_format")


def unquote_patch_path(value: str) -> str:
    """Undo git's C-style path quoting. Raises ValueError on malformed quoting."""
    trimmed = value.strip()
    if not trimmed.startswith('"'):
        return trimmed
    if len(trimmed) < 2 or not trimmed.endswith('"'):
        raise ValueError(f"Unterminated quoted path: {value}")

    chunks = bytearray()
    body = trimmed[1:-1]
    position = 0
    for match in QUOTED_ESCAPE_PATTERN.finditer(body):
        chunks.extend(body[position : match.start()].encode("utf-8"))
        escape = match.group(1)
        if escape is None:
            raise ValueError(f"Invalid escape in quoted path: {value}")
        if escape in _SIMPLE_ESCAPES:
            chunks.extend(_SIMPLE_ESCAPES[escape].encode("utf-8"))
        else:
            chunks.append(int(escape, 8))
        position = match.end()
    chunks.extend(body[position:].encode("utf-8"))
    if '"' in body.replace('\\"', ""):
        raise ValueError(f"Unescaped quote in path: {value}")
    try:
        return chunks.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"Quoted path is not valid UTF-8: {value}") from exc


def _unquote_or_reject(raw_path: str, line_number: int) -> str:
    try:
        return unquote_patch_path(raw_path)
    except ValueError as exc:
        raise PatchExtractionError(
            f"Cannot unquote patch path (line {line_number}): {raw_path}",
            reason="path_violation",
        ) from exc


def _assert_safe_path(path: str, raw_path: str, line_number: int) -> None:
    candidate = path.replace("\\", "/")
    if not candidate:
        raise PatchExtractionError(
            f"Patch path is empty (line {line_number}).", reason="path_violation"
        )
    if candidate.startswith("/") or re.match(r"^[a-zA-Z]:/", candidate):
        raise PatchExtractionError(
            f"Patch path must be relative (line {line_number}): {raw_path}",
            reason="path_violation",
        )
    if ".." in candidate.split("/"):
        raise PatchExtractionError(
            f"Patch path must not contain '..' (line {line_number}): {raw_path}",
            reason="path_violation",
        )


def _assert_safe_side(raw_path: str, prefix: str, line_number: int) -> None:
    path = _unquote_or_reject(raw_path, line_number)
    if prefix and path.startswith(prefix):
        path = path[len(prefix) :]
    _assert_safe_path(path, raw_path, line_number)


def _check_diff_git_header(line: str, line_number: int) -> None:
    match = DIFF_GIT_HEADER_PATTERN.match(line)
    if match:
        _assert_safe_side(match.group(1), "", line_number)
        _assert_safe_side(match.group(2), "", line_number)
        return
    # git quotes paths with special characters: diff --git "a/..." "b/..."
    match = QUOTED_DIFF_GIT_HEADER_PATTERN.match(line)
    if match is None:
        raise PatchExtractionError(
            f"Cannot parse diff --git header (line {line_number}): {line}",
            reason="path_violation",
        )
    _assert_safe_side(match.group(1), "a/", line_number)
    _assert_safe_side(match.group(2), "b/", line_number)


def assert_safe_patch_paths(patch: str) -> None:
    for line_number, line in enumerate(patch.splitlines(), start=1):
        if line.startswith("diff --git "):
            _check_diff_git_header(line, line_number)
            continue
        renamed = RENAME_COPY_PATTERN.match(line)
        if renamed:
            _assert_safe_side(renamed.group(1).strip(), "", line_number)
            continue
        if line.startswith("--- ") or line.startswith("+++ "):
            raw_path = line[4:].split("\t")[0].strip()
            unquoted = _unquote_or_reject(raw_path, line_number)
            if unquoted == "/dev/null":
                continue
            if unquoted.startswith(("a/", "b/")):
                unquoted = unquoted[2:]
            _assert_safe_path(unquoted, raw_path, line_number)


def _finalize(raw: str, source: PatchSource) -> ExtractedPatch:
    patch = _normalize_patch_text(raw)
    _assert_patch_shape(patch)
    assert_safe_patch_paths(patch)
    return ExtractedPatch(patch=patch, source=source)


def extract_patch(text: str) -> ExtractedPatch:
    """Pull a unified diff out of free-form model output.

    Priority: a fenced ``diff`` block, then a fenced ``patch`` block, then a
    ``### PATCH`` section running to the next ``###`` heading. Inside any of
    them a ``[PATCH_BEGIN]...[PATCH_END]`` wrapper narrows the payload.
    """
    normalized = text.strip()
    if not normalized:
        raise PatchExtractionError("Model output is empty.", reason="not_found")

    block = _find_fenced_block(normalized, "diff")
    if block is not None:
        return _finalize(block, "diff_code_block")
    block = _find_fenced_block(normalized, "patch")
    if block is not None:
        return _finalize(block, "patch_code_block")
    section = _find_patch_section(normalized)
    if section is not None:
        return _finalize(section, "patch_section")

    raise PatchExtractionError(
        "No ```diff``` / ```patch``` block or ### PATCH section found.", reason="not_found"
    )


def classify_git_failure(stderr: str) -> ApplyFailure:
    normalized = stderr.lower()
    if (
        "patch does not apply" in normalized
        or "while searching for" in normalized
        or "patch failed" in normalized
    ):
        return "context_mismatch"
    if "not a git repository" in normalized:
        return "not_git_repository"
    if (
        "corrupt patch" in normalized
        or "malformed patch" in normalized
        or "unrecognized input" in normalized
    ):
        return "invalid_patch"
    return "unknown"


class PatchWorkspace:
    """Applies extracted patches to a git working tree and captures the result."""

    def __init__(
        self,
        workspace_dir: Path,
        *,
        git_binary: str = "git",
        timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
    ) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.git_binary = git_binary
        self.timeout_seconds = timeout_seconds

    def _run_git(
        self, args: list[str], label: str, input_text: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        command = [self.git_binary, "--no-pager", *args]
        try:
            proc = subprocess.run(
                command,
                cwd=self.workspace_dir,
                text=True,
                capture_output=True,
                input=input_text,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise PatchApplyError(
                f"{label} timed out after {self.timeout_seconds:.1f}s",
                reason="timeout",
                command=command,
            ) from exc
        except OSError as exc:
            raise PatchApplyError(
                f"{label} could not be started: {exc}",
                reason="unknown",
                stderr=str(exc),
                command=command,
            ) from exc

        if proc.returncode != 0:
            reason = classify_git_failure(proc.stderr)
            detail = proc.stderr.strip() or f"exit code {proc.returncode}"
            raise PatchApplyError(
                f"{label} failed ({reason}): {detail}",
                reason=reason,
                stderr=proc.stderr,
                command=command,
                exit_code=proc.returncode,
            )
        return proc

    def apply(self, patch: str) -> subprocess.CompletedProcess[str]:
        payload = patch if patch.endswith("\n") else f"{patch}\n"
        try:
            assert_safe_patch_paths(payload)
        except PatchExtractionError as exc:
            raise PatchApplyError(str(exc), reason="path_violation") from exc
        # New files are marked intent-to-add so git diff and the gatekeeper see them.
        proc = self._run_git(
            ["apply", "--intent-to-add", "--whitespace=nowarn", "-"], "git apply", payload
        )
        logger.debug("Applied patch in %s", self.workspace_dir)
        return proc

    def capture_diff(self) -> CapturedDiff:
        diff_stat = self._run_git(["diff", "--stat"], "git diff --stat")
        diff = self._run_git(["diff"], "git diff")
        return CapturedDiff(diff_stat=diff_stat.stdout.rstrip(), diff=diff.stdout.rstrip())
