from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from devteam.command_runner import CommandRunner
from devteam.config import DevTeamConfig, dumps_toml, load_config
from devteam.gatekeeper import Gatekeeper
from devteam.orchestrator import (
    ApprovalHandler,
    ApprovalRequest,
    Orchestrator,
    ProviderResolver,
    RunResult,
    approve_all,
)
from devteam.providers import CachingProviderResolver, create_provider_registry
from devteam.providers.registry import resolve_provider_id
from devteam.state.store import STATE_FILE_NAME
from devteam.tools_config import ToolsConfig, load_tools_config

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "ai-dev-team"
CONFIG_RELATIVE_PATH = Path("config") / "devteam.toml"
TOOLS_RELATIVE_PATH = Path("config") / "tools.yaml"
WORKFLOWS_RELATIVE_DIR = Path("config") / "workflows"
RUNS_RELATIVE_DIR = Path(".runs") / "workflows"
UNSUCCESSFUL_STATUSES = {"failed", "canceled"}


@dataclass(slots=True)
class Runtime:
    root_dir: Path
    run_id: str
    run_dir: Path
    config: DevTeamConfig
    tools: ToolsConfig | None
    orchestrator: Orchestrator


def _resolve_path(base: Path, value: str | Path) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _configure_logging(config: DevTeamConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _create_run_id(workflow_name: str) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")[:-3]
    return f"{workflow_name}-{stamp}Z-{uuid4().hex[:8]}"


def _parse_request(words: tuple[str, ...]) -> str:
    for word in words:
        if word.startswith("-"):
            raise click.ClickException(f"Unsupported option: {word}")
    request = " ".join(words).strip()
    if not request:
        raise click.ClickException("A request sentence is required.")
    return request


def _build_provider_resolver(config: DevTeamConfig) -> ProviderResolver:
    return CachingProviderResolver(create_provider_registry(config.providers))


def _build_approval_handler(assume_yes: bool) -> ApprovalHandler:
    if assume_yes:
        return approve_all

    async def _confirm(request: ApprovalRequest) -> bool:
        click.echo(f"[approval] {request.workflow_name}/{request.phase_id}")
        click.echo(request.prompt)
        return click.confirm("Approve?", default=False)

    return _confirm


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "phase_started":
        click.echo(f"> {event['phase']} (iteration {event['iteration']})")
    elif name == "phase_failed":
        click.echo(f"! {event['phase']} failed: {event['error']}", err=True)
    elif name == "gatekeeper_checks" and event.get("action") != "pass":
        failed = ", ".join(event.get("failed_command_ids", []))
        click.echo(f"  gatekeeper: {event['action']} ({failed})")


def _load_tools(path: Path, *, required: bool) -> ToolsConfig | None:
    if not path.exists():
        if required:
            raise click.ClickException(f"tools.yaml not found: {path}")
        return None
    return load_tools_config(path)


def _load_runtime(
    *,
    root_dir: Path,
    workflow_name: str,
    config_path: Path,
    tools_path: Path,
    tools_required: bool,
    run_dir: Path | None,
    assume_yes: bool,
    use_gatekeeper: bool,
    verbose: bool,
) -> Runtime:
    try:
        config = load_config(config_path)
        _configure_logging(config, verbose)
        tools = _load_tools(tools_path, required=tools_required)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    run_id = _create_run_id(workflow_name)
    if run_dir is None:
        run_dir = root_dir / RUNS_RELATIVE_DIR / run_id
    else:
        run_id = run_dir.name
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Run %s writes to %s", run_id, run_dir)

    gatekeeper: Gatekeeper | None = None
    if use_gatekeeper and tools is not None:
        runner = CommandRunner(workspace_dir=root_dir, run_dir=run_dir, tools=tools)
        gatekeeper = Gatekeeper.from_config(runner, config.gatekeeper)

    orchestrator = Orchestrator(
        _build_provider_resolver(config),
        approval_handler=_build_approval_handler(assume_yes),
        gatekeeper=gatekeeper,
        check_command_ids=list(dict.fromkeys(config.gatekeeper.check_command_ids)),
        max_auto_fix_retries=config.gatekeeper.max_auto_fix_retries,
        event_hook=_echo_event,
    )
    return Runtime(
        root_dir=root_dir,
        run_id=run_id,
        run_dir=run_dir,
        config=config,
        tools=tools,
        orchestrator=orchestrator,
    )


def _execute(
    runtime: Runtime, workflow_path: Path, request: str, provider: str | None
) -> RunResult:
    default_provider_id = resolve_provider_id(provider, routing=runtime.config.routing)
    try:
        return asyncio.run(
            runtime.orchestrator.run(
                workflow_path,
                runtime.run_dir,
                runtime.root_dir,
                request,
                default_provider_id=default_provider_id,
                role_provider_map=dict(runtime.config.routing.roles),
            )
        )
    except (RuntimeError, ValueError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc


def _report(runtime: Runtime, result: RunResult) -> None:
    click.echo(f"Run ID: {runtime.run_id}")
    click.echo(f"Status: {result.state.status}")
    click.echo(f"Phases: {' -> '.join(result.executed_phases)}")
    click.echo(f"Artifacts: {len(result.artifacts)}")
    click.echo(f"State file: {runtime.run_dir / STATE_FILE_NAME}")
    if result.state.status in UNSUCCESSFUL_STATUSES:
        raise click.ClickException(f"Run ended with status {result.state.status}")


@click.group()
def cli() -> None:
    """AI dev-team workflow runner."""


@cli.command("run")
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("request_words", nargs=-1)
@click.option("--workspace", "workspace_value", default=".", show_default=True)
@click.option("--config", "config_value", default=None)
@click.option("--tools", "tools_value", default=None)
@click.option("--run-dir", "run_dir_value", default=None)
@click.option("--provider", default=None)
@click.option("--yes", "assume_yes", is_flag=True, default=False)
@click.option("--no-gatekeeper", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    workflow: Path,
    request_words: tuple[str, ...],
    workspace_value: str,
    config_value: str | None,
    tools_value: str | None,
    run_dir_value: str | None,
    provider: str | None,
    assume_yes: bool,
    no_gatekeeper: bool,
    verbose: bool,
) -> None:
    request = _parse_request(request_words)
    cwd = Path.cwd().resolve()
    root_dir = _resolve_path(cwd, workspace_value)
    config_dir = root_dir / DEFAULT_WORKSPACE_NAME
    runtime = _load_runtime(
        root_dir=root_dir,
        workflow_name=workflow.stem,
        config_path=_resolve_path(cwd, config_value or config_dir / CONFIG_RELATIVE_PATH),
        tools_path=_resolve_path(cwd, tools_value or config_dir / TOOLS_RELATIVE_PATH),
        tools_required=tools_value is not None,
        run_dir=_resolve_path(cwd, run_dir_value) if run_dir_value else None,
        assume_yes=assume_yes,
        use_gatekeeper=not no_gatekeeper,
        verbose=verbose,
    )
    result = _execute(runtime, workflow.resolve(), request, provider)
    _report(runtime, result)


@cli.group("manager")
def manager_group() -> None:
    """Workflow manager commands."""


@manager_group.command("refactor")
@click.argument("request_words", nargs=-1)
@click.option("--provider", default=None)
@click.option("--yes", "assume_yes", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
def manager_refactor_command(
    request_words: tuple[str, ...], provider: str | None, assume_yes: bool, verbose: bool
) -> None:
    request = _parse_request(request_words)
    root_dir = Path.cwd().resolve()
    config_dir = root_dir / DEFAULT_WORKSPACE_NAME
    config_path = config_dir / CONFIG_RELATIVE_PATH
    try:
        workflow_name = load_config(config_path).routing.default_workflow
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    workflow_path = config_dir / WORKFLOWS_RELATIVE_DIR / f"{workflow_name}.yaml"
    if not workflow_path.exists():
        raise click.ClickException(f"Workflow not found: {workflow_path}")

    runtime = _load_runtime(
        root_dir=root_dir,
        workflow_name=workflow_name,
        config_path=config_path,
        tools_path=config_dir / TOOLS_RELATIVE_PATH,
        tools_required=True,
        run_dir=None,
        assume_yes=assume_yes,
        use_gatekeeper=True,
        verbose=verbose,
    )
    result = _execute(runtime, workflow_path, request, provider)
    _report(runtime, result)


@cli.group("tools")
def tools_group() -> None:
    """Allowlisted command configuration."""


@tools_group.command("list")
@click.option("--tools", "tools_value", default=None)
def tools_list_command(tools_value: str | None) -> None:
    cwd = Path.cwd().resolve()
    path = _resolve_path(cwd, tools_value or Path(DEFAULT_WORKSPACE_NAME) / TOOLS_RELATIVE_PATH)
    if not path.exists():
        raise click.ClickException(f"tools.yaml not found: {path}")
    try:
        tools = load_tools_config(path)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    for command in tools.commands:
        timeout = f" (timeout {command.timeout_ms}ms)" if command.timeout_ms is not None else ""
        click.echo(f"{command.id}: {' '.join(command.argv)}{timeout}")


@cli.command("status")
@click.argument("run_dir", type=click.Path(file_okay=False, path_type=Path))
def status_command(run_dir: Path) -> None:
    state_path = run_dir / STATE_FILE_NAME
    if not state_path.exists():
        raise click.ClickException(f"No run state found: {state_path}")
    try:
        payload = json.loads(state_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Run state is not valid JSON: {state_path}") from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("config")
@click.option("--config", "config_value", default=None)
def config_command(config_value: str | None) -> None:
    cwd = Path.cwd().resolve()
    path = _resolve_path(cwd, config_value or Path(DEFAULT_WORKSPACE_NAME) / CONFIG_RELATIVE_PATH)
    try:
        config = load_config(path)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(dumps_toml(config), nl=False)
