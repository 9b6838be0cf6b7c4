from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from devteam.command_runner import CommandResult
from devteam.config import MAX_AUTO_FIX_RETRIES_LIMIT
from devteam.gatekeeper import ChangeRiskDecision, Gatekeeper
from devteam.patch_first import (
    PatchApplyError,
    PatchExtractionError,
    PatchWorkspace,
    extract_patch,
)
from devteam.providers.base import Provider, ProviderRequest
from devteam.state.artifacts import ArtifactRecord, ArtifactStore
from devteam.state.run_log import RunLogger, RunLogLevel
from devteam.state.store import PhaseState, RunState, RunStatus, StateStore
from devteam.workflow import (
    ApprovalPhase,
    Decision,
    LlmPhase,
    WorkflowDefinition,
    has_decision_marker,
    load_workflow,
    parse_decision,
)

logger = logging.getLogger(__name__)

PATCH_FIRST_ROLES = frozenset({"developer", "fixer"})
DEFAULT_MAX_AUTO_FIX_RETRIES = 2
FEEDBACK_STDERR_LIMIT = 320

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_.-]+)\s*\}\}")
PHASE_OUTPUT_KEY_PATTERN = re.compile(r"^phase\.([a-zA-Z0-9_-]+)\.output$")
MANAGER_SECTION_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE | re.MULTILINE)
    for pattern in (
        r"^#\s*USER_UPDATE\b",
        r"^##\s*TL;DR",
        r"^##\s*What changed\b",
        r"^##\s*Risks\b",
        r"^##\s*Actions needed\b",
        r"^##\s*Next\b",
    )
)


class OrchestratorError(RuntimeError):
    """Raised when a phase cannot be prepared or executed."""


class GatekeeperCheckError(OrchestratorError):
    """Raised when verification failed and no auto-fix retries remain."""


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    workflow_name: str
    phase_id: str
    prompt: str
    request: str
    iteration: int


ApprovalHandler = Callable[[ApprovalRequest], Awaitable[bool]]
ProviderResolver = Callable[[str, LlmPhase], Provider]
EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RunResult:
    run_dir: Path
    workflow_name: str
    state: RunState
    executed_phases: list[str]
    artifacts: list[ArtifactRecord]


@dataclass(slots=True)
class RenderContext:
    request: str
    workflow_name: str
    phase_id: str
    iteration: int
    outputs: dict[str, str] = field(default_factory=dict)
    latest_output: str = ""
    role: str | None = None

    def resolve(self, key: str) -> str | None:
        simple = {
            "request": self.request,
            "workflow.name": self.workflow_name,
            "phase.id": self.phase_id,
            "phase.role": self.role,
            "iteration": str(self.iteration),
            "latest_output": self.latest_output,
        }
        if key in simple:
            return simple[key]
        match = PHASE_OUTPUT_KEY_PATTERN.match(key)
        if match:
            return self.outputs.get(match.group(1))
        return None


@dataclass(slots=True)
class _GatekeeperOutcome:
    cancel_run: bool = False
    next_phase_id: str | None = None
    evaluator_feedback: str | None = None


@dataclass(slots=True)
class _RunContext:
    workflow: WorkflowDefinition
    run_dir: Path
    workspace_dir: Path
    request: str
    default_provider_id: str | None
    role_provider_map: dict[str, str]
    state: RunState
    state_store: StateStore
    artifact_store: ArtifactStore
    run_log: RunLogger
    patch_workspace: PatchWorkspace
    fix_phase_id: str | None
    evaluate_phase_id: str | None
    iteration: int = 0
    latest_output: str = ""
    outputs: dict[str, str] = field(default_factory=dict)
    executed_phases: list[str] = field(default_factory=list)
    artifacts: list[ArtifactRecord] = field(default_factory=list)

    def render_context(self, phase_id: str, role: str | None = None) -> RenderContext:
        return RenderContext(
            request=self.request,
            workflow_name=self.workflow.name,
            phase_id=phase_id,
            iteration=self.iteration,
            outputs=self.outputs,
            latest_output=self.latest_output,
            role=role,
        )

    def write_artifact(self, phase_id: str, suffix: str, content: str) -> ArtifactRecord:
        record = self.artifact_store.write(
            phase_id, f"{iteration_label(self.iteration)}.{suffix}", content
        )
        self.artifacts.append(record)
        self.state.add_artifact(phase_id, record.relative_path)
        return record

    def log(
        self,
        source: str,
        message: str,
        *,
        phase: str | None = None,
        level: RunLogLevel = "INFO",
        context: dict[str, Any] | None = None,
    ) -> None:
        self.run_log.append(source, message, phase=phase, level=level, context=context)


def render_template(template: str, context: RenderContext) -> str:
    """Substitute ``{{ key }}`` placeholders. Unknown keys render empty."""

    def _replace(match: re.Match[str]) -> str:
        return context.resolve(match.group(1).strip()) or ""

    return TEMPLATE_PATTERN.sub(_replace, template)


def iteration_label(iteration: int) -> str:
    return f"iter-{iteration:04d}"


def is_manager_update(text: str) -> bool:
    return all(pattern.search(text) for pattern in MANAGER_SECTION_PATTERNS)


def format_manager_update(text: str) -> str:
    """Return ``text`` if it is already a user update, else synthesise one from it."""
    normalized = text.strip()
    if is_manager_update(normalized):
        return normalized
    fallback = normalized or "Status update for the requested work."
    tldr = next((line.strip() for line in fallback.splitlines() if line.strip()), "No summary")
    return "\n".join(
        [
            "# USER_UPDATE",
            "## TL;DR",
            tldr,
            "",
            "## What changed",
            fallback,
            "",
            "## Risks",
            "- No notable risks",
            "",
            "## Actions needed (Y/n or options)",
            "- Y",
            "",
            "## Next",
            "- Proceed to next step",
        ]
    )


def normalize_artifact_suffix(value: str) -> str:
    normalized = re.sub(r"[^a-z0-9_-]+", "-", value.strip().lower())
    return normalized or "command"


def _truncate_for_feedback(value: str, limit: int = FEEDBACK_STDERR_LIMIT) -> str:
    trimmed = value.strip()
    if not trimmed:
        return "(empty)"
    if len(trimmed) <= limit:
        return trimmed
    return f"{trimmed[:limit]}...[truncated]"


def format_check_result(result: CommandResult) -> str:
    return "\n".join(
        [
            f"command_id: {result.command_id}",
            f"command: {' '.join(result.command)}",
            f"exit_code: {'null' if result.exit_code is None else result.exit_code}",
            f"timed_out: {'yes' if result.timed_out else 'no'}",
            f"duration_ms: {result.duration_ms}",
            "",
            "[stdout]",
            result.stdout,
            "",
            "[stderr]",
            result.stderr,
        ]
    )


def create_auto_fix_feedback(
    check_results: list[CommandResult], retry_count: int, evaluate_phase_id: str | None
) -> str:
    target = f"phase.{evaluate_phase_id}.output" if evaluate_phase_id else "the evaluator phase"
    lines = [
        f"[AUTO_FIX] Verification failed; fix retry ({retry_count})",
        f"Failure summary for {target}",
    ]
    for result in check_results:
        if not result.failed:
            continue
        lines.extend(
            [
                f"- {result.command_id}",
                f"  exitCode: {'null' if result.exit_code is None else result.exit_code}",
                f"  timedOut: {'yes' if result.timed_out else 'no'}",
                f"  stderr: {_truncate_for_feedback(result.stderr)}",
            ]
        )
    return "\n".join(lines)


def create_gatekeeper_prompt(risk: ChangeRiskDecision) -> str:
    reasons = "\n".join(f"- {reason}" for reason in risk.reasons) or "- none"
    return "\n".join(
        [
            "[Gatekeeper] Risky change detected.",
            f"Changed files: {risk.changed_file_count}",
            f"Changed lines: {risk.total_changed_lines}",
            "Reasons:",
            reasons,
            "Continue?",
        ]
    )


async def approve_all(request: ApprovalRequest) -> bool:
    return True


def _validate_retry_limit(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"max_auto_fix_retries must be an integer: {value!r}")
    if not 0 <= value <= MAX_AUTO_FIX_RETRIES_LIMIT:
        raise ValueError(
            f"max_auto_fix_retries must be between 0 and {MAX_AUTO_FIX_RETRIES_LIMIT}: {value}"
        )
    return value


class Orchestrator:
    """Drives one workflow run through its phase graph, one phase at a time.

    Every phase and run status change is persisted to ``current-run.json``
    before the loop moves on. Any exception raised while a phase executes is
    recorded on that phase, fails the run and stops the loop.
    """

    def __init__(
        self,
        provider_resolver: ProviderResolver,
        *,
        approval_handler: ApprovalHandler | None = None,
        gatekeeper: Gatekeeper | None = None,
        check_command_ids: list[str] | None = None,
        max_auto_fix_retries: int = DEFAULT_MAX_AUTO_FIX_RETRIES,
        event_hook: EventHook | None = None,
        require_decision_tag: bool = False,
    ) -> None:
        self.provider_resolver = provider_resolver
        self.approval_handler = approval_handler or approve_all
        self.gatekeeper = gatekeeper
        self.check_command_ids = list(
            dict.fromkeys(
                item.strip() for item in (check_command_ids or []) if item and item.strip()
            )
        )
        self.max_auto_fix_retries = _validate_retry_limit(max_auto_fix_retries)
        self.event_hook = event_hook
        self.require_decision_tag = require_decision_tag

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def _persist(ctx: _RunContext) -> None:
        ctx.state_store.save(ctx.state)

    def _finish(self, ctx: _RunContext, status: RunStatus) -> None:
        ctx.state.status = status
        ctx.state.current_phase = None
        self._persist(ctx)

    async def run(
        self,
        workflow_path: Path,
        run_dir: Path,
        workspace_dir: Path,
        request: str,
        *,
        default_provider_id: str | None = None,
        role_provider_map: dict[str, str] | None = None,
    ) -> RunResult:
        workflow = load_workflow(workflow_path)
        state = RunState(
            status="running",
            current_phase=workflow.entry_phase,
            phases=[PhaseState(id=phase.id) for phase in workflow.phases],
        )
        ctx = _RunContext(
            workflow=workflow,
            run_dir=run_dir,
            workspace_dir=workspace_dir,
            request=request,
            default_provider_id=default_provider_id,
            role_provider_map={
                role.strip().lower(): provider
                for role, provider in (role_provider_map or {}).items()
            },
            state=state,
            state_store=StateStore(run_dir),
            artifact_store=ArtifactStore(run_dir),
            run_log=RunLogger(run_dir),
            patch_workspace=PatchWorkspace(workspace_dir),
            fix_phase_id=workflow.find_phase_by_role("fixer"),
            evaluate_phase_id=workflow.find_phase_by_role("evaluator"),
        )
        self._persist(ctx)
        ctx.log("orchestrator", f"Workflow started: {workflow.name}")
        logger.info("Starting workflow %s in %s", workflow.name, run_dir)

        current_phase_id: str | None = workflow.entry_phase
        while current_phase_id is not None:
            if ctx.iteration >= workflow.max_steps:
                ctx.log(
                    "orchestrator",
                    "Run stopped: max_steps exceeded",
                    level="ERROR",
                    context={"maxSteps": workflow.max_steps, "pendingPhase": current_phase_id},
                )
                logger.error("Workflow %s exceeded max_steps=%d", workflow.name, workflow.max_steps)
                self._finish(ctx, "failed")
                break

            phase = workflow.phase(current_phase_id)
            ctx.iteration += 1
            phase_state = state.phase(phase.id)
            phase_state.mark_running()
            state.current_phase = phase.id
            state.status = "awaiting_approval" if isinstance(phase, ApprovalPhase) else "running"
            self._persist(ctx)
            self._emit({"event": "phase_started", "phase": phase.id, "iteration": ctx.iteration})

            try:
                if isinstance(phase, ApprovalPhase):
                    current_phase_id = await self._run_approval_phase(ctx, phase, phase_state)
                else:
                    current_phase_id = await self._run_llm_phase(ctx, phase, phase_state)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                phase_state.mark_failed(message)
                ctx.log(
                    "orchestrator",
                    "Phase failed",
                    phase=phase.id,
                    level="ERROR",
                    context={"error": message, "type": exc.__class__.__name__},
                )
                logger.error("Phase %s failed: %s", phase.id, message)
                self._emit({"event": "phase_failed", "phase": phase.id, "error": message})
                self._finish(ctx, "failed")
                break

        ctx.log(
            "orchestrator",
            "Workflow finished",
            context={"status": state.status, "executedPhases": ctx.executed_phases},
        )
        self._emit(
            {
                "event": "run_finished",
                "status": state.status,
                "executed_phases": list(ctx.executed_phases),
            }
        )
        return RunResult(
            run_dir=run_dir,
            workflow_name=workflow.name,
            state=state,
            executed_phases=ctx.executed_phases,
            artifacts=ctx.artifacts,
        )

    def _complete_phase(
        self, ctx: _RunContext, phase_id: str, phase_state: PhaseState, output: str
    ) -> None:
        ctx.outputs[phase_id] = output
        ctx.latest_output = output
        phase_state.mark_completed()
        ctx.executed_phases.append(phase_id)
        self._emit({"event": "phase_completed", "phase": phase_id, "iteration": ctx.iteration})

    def _advance(
        self, ctx: _RunContext, next_phase_id: str | None, *, final_status: RunStatus
    ) -> str | None:
        if next_phase_id is None:
            self._finish(ctx, final_status)
            return None
        ctx.state.status = "running"
        ctx.state.current_phase = next_phase_id
        self._persist(ctx)
        return next_phase_id

    async def _run_approval_phase(
        self, ctx: _RunContext, phase: ApprovalPhase, phase_state: PhaseState
    ) -> str | None:
        prompt = render_template(phase.prompt_template, ctx.render_context(phase.id))
        approved = await self.approval_handler(
            ApprovalRequest(
                workflow_name=ctx.workflow.name,
                phase_id=phase.id,
                prompt=prompt,
                request=ctx.request,
                iteration=ctx.iteration,
            )
        )
        ctx.write_artifact(
            phase.id,
            "approval.txt",
            f"prompt: {prompt}\napproved: {'yes' if approved else 'no'}",
        )
        self._complete_phase(ctx, phase.id, phase_state, "APPROVED" if approved else "REJECTED")
        ctx.log(
            "orchestrator",
            "Approval phase completed",
            phase=phase.id,
            context={"approved": approved},
        )

        if phase.terminal_status:
            self._finish(ctx, phase.terminal_status)
            return None
        if approved:
            return self._advance(ctx, phase.next_on_approve, final_status="completed")
        return self._advance(ctx, phase.next_on_reject, final_status="canceled")

    @staticmethod
    def _resolve_provider_id(ctx: _RunContext, phase: LlmPhase) -> str:
        for candidate in (
            phase.provider,
            ctx.role_provider_map.get(phase.role.strip().lower()),
            ctx.default_provider_id,
        ):
            if candidate and candidate.strip():
                return candidate.strip()
        raise OrchestratorError(f"Cannot resolve a provider for phase {phase.id}")

    @staticmethod
    def _system_prompt_template(ctx: _RunContext, phase: LlmPhase) -> str:
        if not phase.system_prompt_file:
            return phase.system_prompt or f"You are acting as the {phase.role} role."
        root = ctx.workspace_dir.resolve()
        prompt_path = (root / phase.system_prompt_file).resolve()
        if not prompt_path.is_relative_to(root):
            raise OrchestratorError(
                f"system_prompt_file is outside the workspace: {phase.system_prompt_file}"
            )
        try:
            return prompt_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise OrchestratorError(
                f"Cannot read system_prompt_file {phase.system_prompt_file}: {exc}"
            ) from exc

    def _decide(self, ctx: _RunContext, phase: LlmPhase, text: str) -> Decision:
        if has_decision_marker(text):
            return parse_decision(text)
        # Untagged output: pass by default, ask when tags are mandatory.
        fallback: Decision = "ask" if self.require_decision_tag else "pass"
        ctx.log(
            "orchestrator",
            "Output carries no decision tag",
            phase=phase.id,
            level="WARN",
            context={"decision": fallback},
        )
        logger.warning("Phase %s produced no decision tag; routing to %s", phase.id, fallback)
        return fallback

    def _resolve_next_phase(self, ctx: _RunContext, phase: LlmPhase, text: str) -> str | None:
        if phase.decision_source != "output_tag":
            return phase.next
        decision = self._decide(ctx, phase, text)
        self._emit({"event": "decision", "phase": phase.id, "decision": decision})
        targets = {
            "pass": phase.next_on_pass,
            "fix": phase.next_on_fix,
            "ask": phase.next_on_ask,
        }
        return targets[decision] or phase.next

    async def _run_llm_phase(
        self, ctx: _RunContext, phase: LlmPhase, phase_state: PhaseState
    ) -> str | None:
        provider_id = self._resolve_provider_id(ctx, phase)
        provider = self.provider_resolver(provider_id, phase)
        render_ctx = ctx.render_context(phase.id, phase.role)
        system_prompt = render_template(self._system_prompt_template(ctx, phase), render_ctx)
        user_prompt = render_template(phase.prompt_template, render_ctx)

        ctx.log(
            "provider",
            "provider.run started",
            phase=phase.id,
            context={"providerId": provider_id, "role": phase.role, "iteration": ctx.iteration},
        )
        result = await provider.run(
            ProviderRequest(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                workspace_dir=ctx.workspace_dir,
            )
        )
        ctx.write_artifact(phase.id, "raw.txt", result.text)

        role = phase.role.strip().lower()
        output = result.text
        outcome = _GatekeeperOutcome()
        if role == "manager":
            output = format_manager_update(result.text)
            if output != result.text.strip():
                ctx.log(
                    "orchestrator",
                    "Manager output reformatted into a user update",
                    phase=phase.id,
                    level="WARN",
                )
                logger.warning("Manager phase %s output did not match the update format", phase.id)
            ctx.write_artifact(phase.id, "manager-update.md", output)
        else:
            if phase.id.strip().lower() == "plan" and role == "planner":
                plan = output if output.endswith("\n") else f"{output}\n"
                ctx.write_artifact(phase.id, "plan.md", plan)
            if role in PATCH_FIRST_ROLES:
                await self._apply_patch_output(ctx, phase, output)
                if self.gatekeeper is not None:
                    outcome = await self._run_gatekeeper(ctx, self.gatekeeper, phase)
                    if outcome.evaluator_feedback:
                        output = f"{output}\n\n{outcome.evaluator_feedback}"
                        if ctx.evaluate_phase_id:
                            ctx.outputs[ctx.evaluate_phase_id] = outcome.evaluator_feedback

        self._complete_phase(ctx, phase.id, phase_state, output)
        ctx.log(
            "provider",
            "provider.run completed",
            phase=phase.id,
            context={
                "providerId": provider_id,
                "durationMs": result.meta.duration_ms,
                "command": result.meta.command,
                "exitCode": result.meta.exit_code,
            },
        )

        if outcome.cancel_run:
            self._finish(ctx, "canceled")
            return None
        if phase.terminal_status:
            self._finish(ctx, phase.terminal_status)
            return None
        next_phase_id = outcome.next_phase_id or self._resolve_next_phase(ctx, phase, output)
        return self._advance(ctx, next_phase_id, final_status="completed")

    async def _apply_patch_output(self, ctx: _RunContext, phase: LlmPhase, text: str) -> None:
        try:
            extracted = extract_patch(text)
            ctx.log(
                "orchestrator",
                "Patch extracted",
                phase=phase.id,
                context={"source": extracted.source},
            )
            ctx.write_artifact(phase.id, "patch", extracted.patch)
            await asyncio.to_thread(ctx.patch_workspace.apply, extracted.patch)
            ctx.log("orchestrator", "Patch applied", phase=phase.id)
            captured = await asyncio.to_thread(ctx.patch_workspace.capture_diff)
            diff_stat = ctx.write_artifact(phase.id, "diffstat.txt", captured.diff_stat)
            diff = ctx.write_artifact(phase.id, "diff.txt", captured.diff)
            ctx.log(
                "orchestrator",
                "Diff artifacts saved",
                phase=phase.id,
                context={"diffStatBytes": diff_stat.bytes, "diffBytes": diff.bytes},
            )
        except (PatchExtractionError, PatchApplyError) as exc:
            ctx.log(
                "orchestrator",
                "Patch-first processing failed",
                phase=phase.id,
                level="ERROR",
                context={"reason": exc.reason, "error": str(exc)},
            )
            raise

    async def _run_gatekeeper(
        self, ctx: _RunContext, gatekeeper: Gatekeeper, phase: LlmPhase
    ) -> _GatekeeperOutcome:
        outcome = _GatekeeperOutcome()

        risk = await asyncio.to_thread(gatekeeper.inspect_changes)
        ctx.write_artifact(
            phase.id,
            "gatekeeper-risk.json",
            json.dumps(risk.to_dict(), ensure_ascii=False, indent=2),
        )
        ctx.log(
            "gatekeeper",
            "Risky change detected" if risk.requires_approval else "No risky change",
            phase=phase.id,
            context={
                "requiresApproval": risk.requires_approval,
                "reasons": risk.reasons,
                "changedFileCount": risk.changed_file_count,
                "totalChangedLines": risk.total_changed_lines,
            },
        )
        self._emit({"event": "gatekeeper_risk", "phase": phase.id, **risk.to_dict()})

        if risk.requires_approval:
            prompt = create_gatekeeper_prompt(risk)
            ctx.state.status = "awaiting_approval"
            ctx.state.current_phase = phase.id
            self._persist(ctx)
            approved = await self.approval_handler(
                ApprovalRequest(
                    workflow_name=ctx.workflow.name,
                    phase_id=phase.id,
                    prompt=prompt,
                    request=ctx.request,
                    iteration=ctx.iteration,
                )
            )
            ctx.write_artifact(
                phase.id,
                "gatekeeper-approval.txt",
                f"[gatekeeper] prompt: {prompt}\n"
                f"[gatekeeper] approved: {'yes' if approved else 'no'}",
            )
            ctx.log(
                "gatekeeper",
                "Gatekeeper approval answered",
                phase=phase.id,
                context={"approved": approved, "reasons": risk.reasons},
            )
            if not approved:
                outcome.cancel_run = True
                return outcome
            ctx.state.status = "running"
            self._persist(ctx)

        if not self.check_command_ids:
            return outcome

        results = await asyncio.to_thread(gatekeeper.run_checks, self.check_command_ids)
        for result in results:
            ctx.write_artifact(
                phase.id,
                f"check-{normalize_artifact_suffix(result.command_id)}.txt",
                format_check_result(result),
            )
        decision = gatekeeper.decide_check_failure(
            results, ctx.state.retries, self.max_auto_fix_retries
        )
        ctx.log(
            "gatekeeper",
            "Verification decided",
            phase=phase.id,
            context={
                "action": decision.action,
                "failedCommandIds": decision.failed_command_ids,
                "retries": ctx.state.retries,
                "maxAutoFixRetries": self.max_auto_fix_retries,
            },
        )
        self._emit(
            {
                "event": "gatekeeper_checks",
                "phase": phase.id,
                "action": decision.action,
                "failed_command_ids": list(decision.failed_command_ids),
            }
        )

        if decision.action == "pass":
            return outcome
        if decision.action == "auto_fix":
            ctx.state.retries += 1
            self._persist(ctx)
            logger.info("Auto-fix retry %d after phase %s", ctx.state.retries, phase.id)
            outcome.next_phase_id = ctx.fix_phase_id or phase.id
            outcome.evaluator_feedback = create_auto_fix_feedback(
                results, ctx.state.retries, ctx.evaluate_phase_id
            )
            return outcome
        raise GatekeeperCheckError(decision.message)
