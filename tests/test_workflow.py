from pathlib import Path

import pytest

from devteam.workflow import (
    DEFAULT_MAX_STEPS,
    ApprovalPhase,
    LlmPhase,
    WorkflowParseError,
    has_decision_marker,
    load_workflow,
    parse_decision,
    parse_workflow,
)

WORKFLOW_YAML = """
name: refactor
entry_phase: plan
max_steps: 16
phases:
  - id: plan
    type: llm
    role: planner
    provider: mock
    prompt_template: "phase=plan request={{request}}"
    next: approve
  - id: approve
    type: approval
    prompt_template: "approve plan={{phase.plan.output}}"
    next_on_approve: implement
    next_on_reject: ask
  - id: implement
    role: developer
    prompt_template: "phase=implement"
    next: evaluate
  - id: evaluate
    role: evaluator
    prompt_template: "phase=evaluate"
    decision_source: output_tag
    next_on_pass: review
    next_on_fix: fix
    next_on_ask: ask
  - id: fix
    role: fixer
    prompt_template: "phase=fix"
    next: review
  - id: ask
    role: planner
    prompt_template: "phase=ask"
    terminal_status: awaiting_input
  - id: review
    role: reviewer
    prompt_template: "phase=review"
    terminal_status: completed
"""


def test_parsing_the_same_text_twice_is_structurally_equal() -> None:
    first = parse_workflow(WORKFLOW_YAML)
    second = parse_workflow(WORKFLOW_YAML)

    assert first == second
    assert first.name == "refactor"
    assert first.entry_phase == "plan"
    assert first.max_steps == 16
    assert [phase.id for phase in first.phases] == [
        "plan",
        "approve",
        "implement",
        "evaluate",
        "fix",
        "ask",
        "review",
    ]


def test_phase_shapes_and_role_lookup() -> None:
    workflow = parse_workflow(WORKFLOW_YAML)

    approve = workflow.phase("approve")
    assert isinstance(approve, ApprovalPhase)
    assert approve.next_on_reject == "ask"

    evaluate = workflow.phase("evaluate")
    assert isinstance(evaluate, LlmPhase)
    assert evaluate.type == "llm"
    assert evaluate.decision_source == "output_tag"
    assert evaluate.next_on_fix == "fix"
    assert workflow.phase("ask").terminal_status == "awaiting_input"
    assert workflow.find_phase_by_role("Fixer") == "fix"
    assert workflow.find_phase_by_role("manager") is None
    with pytest.raises(KeyError):
        workflow.phase("missing")


def test_defaults_for_entry_phase_and_max_steps() -> None:
    workflow = parse_workflow(
        "name: tiny\nphases:\n  - id: only\n    role: planner\n    prompt_template: go\n"
    )

    assert workflow.entry_phase == "only"
    assert workflow.max_steps == DEFAULT_MAX_STEPS


def test_dangling_transition_target_is_rejected() -> None:
    text = WORKFLOW_YAML.replace("next_on_fix: fix", "next_on_fix: missing_phase")

    with pytest.raises(WorkflowParseError, match="missing_phase"):
        parse_workflow(text)


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("phases:\n  - id: a\n    role: r\n    prompt_template: p\n", "workflow.name"),
        ("name: x\nphases: []\n", "non-empty list"),
        (
            "name: x\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n"
            "  - id: a\n    role: r\n    prompt_template: p\n",
            "Duplicate phase id",
        ),
        ("name: x\nmax_steps: 0\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n",
         "max_steps"),
        ("name: x\nphases:\n  - id: a\n    type: shell\n    prompt_template: p\n",
         "Unsupported phase type"),
        (
            "name: x\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n"
            "    decision_source: vibes\n",
            "decision_source",
        ),
        (
            "name: x\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n"
            "    terminal_status: done\n",
            "terminal_status",
        ),
        ("name: x\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n    retries: 3\n",
         "Unknown keys"),
        ("name: x\nowner: me\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n",
         "Unknown workflow keys"),
        ("name: x\nentry_phase: b\nphases:\n  - id: a\n    role: r\n    prompt_template: p\n",
         "entry_phase"),
        ("name: [unclosed\n", "not valid YAML"),
    ],
)
def test_malformed_workflows_are_rejected(text: str, message: str) -> None:
    with pytest.raises(WorkflowParseError, match=message):
        parse_workflow(text)


def test_load_workflow_reads_file(tmp_path: Path) -> None:
    path = tmp_path / "refactor.yaml"
    path.write_text(WORKFLOW_YAML, encoding="utf-8")

    assert load_workflow(path).name == "refactor"
    with pytest.raises(WorkflowParseError, match="Cannot read workflow file"):
        load_workflow(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("DECISION: FIX", "fix"),
        ("decision : pass", "pass"),
        ("Looks fine.\nDECISION: ASK", "ask"),
        ("[ASK] which database should we target?", "ask"),
        ("[FIX] the tests are red", "fix"),
        ("[FAIL] build broke", "fix"),
        ("[ASK] unsure\nDECISION: PASS", "pass"),
        ("[FIX] and [ASK] both present", "ask"),
        ("All good, ship it.", "pass"),
        ("", "pass"),
    ],
)
def test_parse_decision_priority(text: str, expected: str) -> None:
    assert parse_decision(text) == expected


def test_parse_decision_default_and_marker_detection() -> None:
    assert parse_decision("no tag here", default="ask") == "ask"
    assert has_decision_marker("DECISION: PASS") is True
    assert has_decision_marker("[fail]") is True
    assert has_decision_marker("we should fix this") is False
