from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from devteam.command_runner import CommandResult, CommandRunnerError
from devteam.config import DEFAULT_SECURITY_PATH_PATTERN, GatekeeperConfig

logger = logging.getLogger(__name__)

CheckAction = Literal["pass", "auto_fix", "fail"]

DEFAULT_DIFF_NAME_STATUS_COMMAND_ID = "git-diff-name-status"
DEFAULT_DIFF_NUMSTAT_COMMAND_ID = "git-diff-numstat"
DEFAULT_LARGE_CHANGE_FILES = 20
DEFAULT_LARGE_CHANGE_LINES = 500
SECURITY_PATH_PATTERN = re.compile(DEFAULT_SECURITY_PATH_PATTERN, re.IGNORECASE)


class SupportsRun(Protocol):
    def run(self, command_id: str) -> CommandResult: ...


@dataclass(slots=True)
class ChangeRiskDecision:
    requires_approval: bool
    reasons: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    security_sensitive_files: list[str] = field(default_factory=list)
    changed_file_count: int = 0
    total_changed_lines: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requiresApproval": self.requires_approval,
            "reasons": list(self.reasons),
            "deletedFiles": list(self.deleted_files),
            "securitySensitiveFiles": list(self.security_sensitive_files),
            "changedFileCount": self.changed_file_count,
            "totalChangedLines": self.total_changed_lines,
        }


@dataclass(slots=True)
class CheckDecision:
    action: CheckAction
    failed_command_ids: list[str] = field(default_factory=list)
    message: str = ""


def _parse_name_status(output: str) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        parts = stripped.split("\t")
        status = parts[0].strip()
        # Renames and copies carry "old<TAB>new"; the new path is what changed.
        path = (parts[2] if len(parts) >= 3 else parts[1] if len(parts) > 1 else "").strip()
        if status and path:
            entries.append((status[0], path))
    return entries


def _parse_numstat(output: str) -> list[tuple[int, int, str]]:
    entries: list[tuple[int, int, str]] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        parts = stripped.split("\t")
        if len(parts) < 3 or not parts[2].strip():
            continue
        added_raw, deleted_raw = parts[0].strip(), parts[1].strip()
        try:
            added = 0 if added_raw == "-" else int(added_raw)
            deleted = 0 if deleted_raw == "-" else int(deleted_raw)
        except ValueError:
            continue
        entries.append((added, deleted, parts[2].strip()))
    return entries


def evaluate_risk(
    name_status_output: str,
    numstat_output: str,
    *,
    name_status_result: CommandResult | None = None,
    numstat_result: CommandResult | None = None,
    large_change_file_threshold: int = DEFAULT_LARGE_CHANGE_FILES,
    large_change_line_threshold: int = DEFAULT_LARGE_CHANGE_LINES,
    security_path_pattern: re.Pattern[str] = SECURITY_PATH_PATTERN,
) -> ChangeRiskDecision:
    """Decide whether a working-tree change needs a human approval.

    Deletions, security-sensitive paths and large changes each add a reason,
    in that order. A failed diff command is reported as a reason of its own
    but does not by itself require approval.
    """
    command_failures: list[str] = []
    for result in (name_status_result, numstat_result):
        if result is not None and result.failed:
            command_failures.append(
                f"Change analysis command failed: {result.command_id} "
                f"(exit_code={result.exit_code})"
            )

    name_status = _parse_name_status(name_status_output)
    numstat = _parse_numstat(numstat_output)
    risk_reasons: list[str] = []

    deleted_files = [path for status, path in name_status if status == "D"]
    if deleted_files:
        risk_reasons.append(f"File deletion detected ({len(deleted_files)})")

    changed_paths: list[str] = []
    for path in [path for _, path in name_status] + [path for _, _, path in numstat]:
        if path not in changed_paths:
            changed_paths.append(path)

    security_files = [path for path in changed_paths if security_path_pattern.search(path)]
    if security_files:
        risk_reasons.append(f"Security-sensitive path changed ({len(security_files)})")

    changed_file_count = len(changed_paths)
    total_changed_lines = sum(added + deleted for added, deleted, _ in numstat)
    if changed_file_count >= large_change_file_threshold:
        risk_reasons.append(f"Large change detected: {changed_file_count} files changed")
    if total_changed_lines >= large_change_line_threshold:
        risk_reasons.append(f"Large change detected: {total_changed_lines} lines changed")

    return ChangeRiskDecision(
        requires_approval=bool(risk_reasons),
        reasons=command_failures + risk_reasons,
        deleted_files=deleted_files,
        security_sensitive_files=security_files,
        changed_file_count=changed_file_count,
        total_changed_lines=total_changed_lines,
    )


def decide_check_failure(
    check_results: list[CommandResult], retry_count: int, max_auto_fix_retries: int
) -> CheckDecision:
    failed_ids = [result.command_id for result in check_results if result.failed]
    if not failed_ids:
        return CheckDecision(action="pass", message="All verification commands succeeded.")

    retries_left = max_auto_fix_retries - retry_count
    joined = ", ".join(failed_ids)
    if retries_left > 0:
        return CheckDecision(
            action="auto_fix",
            failed_command_ids=failed_ids,
            message=(
                f"Verification failed ({joined}); attempting auto-fix. "
                f"Retries left: {retries_left}"
            ),
        )
    return CheckDecision(
        action="fail",
        failed_command_ids=failed_ids,
        message=f"Verification failed ({joined}) and the auto-fix retry limit is exhausted.",
    )


class Gatekeeper:
    def __init__(
        self,
        command_runner: SupportsRun,
        *,
        diff_name_status_command_id: str = DEFAULT_DIFF_NAME_STATUS_COMMAND_ID,
        diff_numstat_command_id: str = DEFAULT_DIFF_NUMSTAT_COMMAND_ID,
        large_change_file_threshold: int = DEFAULT_LARGE_CHANGE_FILES,
        large_change_line_threshold: int = DEFAULT_LARGE_CHANGE_LINES,
        security_path_pattern: re.Pattern[str] = SECURITY_PATH_PATTERN,
    ) -> None:
        self.command_runner = command_runner
        self.diff_name_status_command_id = diff_name_status_command_id
        self.diff_numstat_command_id = diff_numstat_command_id
        self.large_change_file_threshold = large_change_file_threshold
        self.large_change_line_threshold = large_change_line_threshold
        self.security_path_pattern = security_path_pattern

    @classmethod
    def from_config(cls, command_runner: SupportsRun, config: GatekeeperConfig) -> Gatekeeper:
        return cls(
            command_runner,
            diff_name_status_command_id=config.diff_name_status_command_id,
            diff_numstat_command_id=config.diff_numstat_command_id,
            large_change_file_threshold=config.large_change_file_threshold,
            large_change_line_threshold=config.large_change_line_threshold,
            security_path_pattern=config.compiled_security_pattern(),
        )

    def _run(self, command_id: str) -> CommandResult:
        try:
            return self.command_runner.run(command_id)
        except CommandRunnerError as exc:
            logger.warning("Gatekeeper command %s could not run: %s", command_id, exc)
            return CommandResult(command_id=command_id, stderr=str(exc), exit_code=None)

    def inspect_changes(self) -> ChangeRiskDecision:
        name_status = self._run(self.diff_name_status_command_id)
        numstat = self._run(self.diff_numstat_command_id)
        return evaluate_risk(
            name_status.stdout,
            numstat.stdout,
            name_status_result=name_status,
            numstat_result=numstat,
            large_change_file_threshold=self.large_change_file_threshold,
            large_change_line_threshold=self.large_change_line_threshold,
            security_path_pattern=self.security_path_pattern,
        )

    def run_checks(self, command_ids: list[str]) -> list[CommandResult]:
        return [self._run(command_id) for command_id in command_ids]

    def decide_check_failure(
        self, check_results: list[CommandResult], retry_count: int, max_auto_fix_retries: int
    ) -> CheckDecision:
        return decide_check_failure(check_results, retry_count, max_auto_fix_retries)
