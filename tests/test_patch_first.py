import subprocess
from pathlib import Path

import pytest

from devteam.patch_first import (
    PatchApplyError,
    PatchExtractionError,
    PatchWorkspace,
    classify_git_failure,
    extract_patch,
    unquote_patch_path,
)

SERVICE_DIFF = (
    "diff --git a/service.txt b/service.txt\n"
    "--- a/service.txt\n"
    "+++ b/service.txt\n"
    "@@ -1 +1 @@\n"
    "-alpha\n"
    "+beta\n"
)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    (repo_path / "service.txt").write_text("alpha\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "service.txt"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def test_diff_block_wins_over_patch_block_and_section() -> None:
    other = SERVICE_DIFF.replace("+beta", "+gamma")
    text = (
        "Plan done.\n\n"
        f"```patch\n{other}```\n\n"
        f"### PATCH\n{other}\n"
        f"```diff\n{SERVICE_DIFF}```\n"
    )

    extracted = extract_patch(text)

    assert extracted.source == "diff_code_block"
    assert "+beta" in extracted.patch
    assert "+gamma" not in extracted.patch


def test_patch_block_is_used_without_diff_block() -> None:
    extracted = extract_patch(f"Here you go:\n```patch\n{SERVICE_DIFF}```\n")

    assert extracted.source == "patch_code_block"
    assert extracted.patch.startswith("diff --git a/service.txt")
    assert extracted.patch.endswith("+beta")


def test_patch_section_stops_at_next_heading() -> None:
    text = f"### SUMMARY\nswap value\n### PATCH\n{SERVICE_DIFF}### NOTES\nnothing else\n"

    extracted = extract_patch(text)

    assert extracted.source == "patch_section"
    assert "NOTES" not in extracted.patch
    assert extracted.patch.endswith("+beta")


def test_patch_markers_narrow_the_payload() -> None:
    text = f"```diff\nnoise before\n[PATCH_BEGIN]\n{SERVICE_DIFF}[PATCH_END]\ntrailer\n```\n"

    extracted = extract_patch(text)

    assert extracted.patch.startswith("diff --git")
    assert "noise" not in extracted.patch
    assert "trailer" not in extracted.patch


def test_plain_unified_diff_without_git_header_is_accepted() -> None:
    body = "--- a/service.txt\n+++ b/service.txt\n@@ -1 +1 @@\n-alpha\n+beta\n"

    assert extract_patch(f"```diff\n{body}```").patch.startswith("--- a/service.txt")


@pytest.mark.parametrize(
    ("text", "reason"),
    [
        ("", "not_found"),
        ("I changed nothing, everything is fine.", "not_found"),
        ("```diff\nthis is not a diff\n```", "invalid_format"),
        ("```diff\n\n\n```", "invalid_format"),
        ("```diff\n[PATCH_BEGIN]\n\n[PATCH_END]\n```", "invalid_format"),
        (
            "```diff\ndiff --git a/../../etc/passwd b/x\n"
            "--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n```",
            "path_violation",
        ),
        (
            "```diff\n--- /dev/null\n+++ /etc/cron.d/job\n@@ -0,0 +1 @@\n+x\n```",
            "path_violation",
        ),
        (
            "```diff\n--- a/x\n+++ \"b/unterminated\n@@ -1 +1 @@\n-a\n+b\n```",
            "path_violation",
        ),
        (
            '```diff\ndiff --git "a/../../etc/passwd" "b/x"\n'
            "--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n```",
            "path_violation",
        ),
        (
            '```diff\ndiff --git "a/x" "b/unterminated\n'
            "--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n```",
            "path_violation",
        ),
        (
            "```diff\ndiff --git a/old.txt b/new.txt\nsimilarity index 100%\n"
            "rename from old.txt\nrename to ../escaped.txt\n```",
            "path_violation",
        ),
        (
            "```diff\ndiff --git a/old.txt b/copy.txt\nsimilarity index 100%\n"
            'copy from old.txt\ncopy to "../sp\\303\\251cial.txt"\n```',
            "path_violation",
        ),
    ],
)
def test_extraction_failures_carry_a_reason(text: str, reason: str) -> None:
    with pytest.raises(PatchExtractionError) as exc_info:
        extract_patch(text)

    assert exc_info.value.reason == reason


def test_quoted_diff_git_header_with_safe_paths_is_accepted() -> None:
    text = (
        '```diff\ndiff --git "a/docs/sp\\303\\251cial.txt" "b/docs/sp\\303\\251cial.txt"\n'
        '--- "a/docs/sp\\303\\251cial.txt"\n'
        '+++ "b/docs/sp\\303\\251cial.txt"\n'
        "@@ -1 +1 @@\n-a\n+b\n```"
    )

    assert extract_patch(text).patch.startswith('diff --git "a/docs/')


def test_unquote_patch_path_handles_git_quoting() -> None:
    assert unquote_patch_path("plain/path.txt") == "plain/path.txt"
    assert unquote_patch_path('"tab\\there"') == "tab\there"
    assert unquote_patch_path('"sp\\303\\251cial.txt"') == "spécial.txt"
    assert unquote_patch_path('"quote\\"inside"') == 'quote"inside'
    with pytest.raises(ValueError):
        unquote_patch_path('"unterminated')
    with pytest.raises(ValueError):
        unquote_patch_path('"bad\\qescape"')


def test_classify_git_failure() -> None:
    assert classify_git_failure("error: patch failed: service.txt:1") == "context_mismatch"
    assert classify_git_failure("fatal: not a git repository") == "not_git_repository"
    assert classify_git_failure("error: corrupt patch at line 4") == "invalid_patch"
    assert classify_git_failure("something odd") == "unknown"


def test_apply_and_capture_diff_in_git_workspace(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = PatchWorkspace(tmp_path)

    workspace.apply(extract_patch(f"```diff\n{SERVICE_DIFF}```").patch)
    captured = workspace.capture_diff()

    assert (tmp_path / "service.txt").read_text(encoding="utf-8") == "beta\n"
    assert "service.txt" in captured.diff_stat
    assert "+beta" in captured.diff
    assert "-alpha" in captured.diff


def test_new_files_show_up_in_captured_diff(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = PatchWorkspace(tmp_path)
    new_file = (
        "diff --git a/notes/todo.txt b/notes/todo.txt\n"
        "new file mode 100644\n"
        "--- /dev/null\n"
        "+++ b/notes/todo.txt\n"
        "@@ -0,0 +1 @@\n"
        "+write docs\n"
    )

    workspace.apply(new_file)
    captured = workspace.capture_diff()

    assert (tmp_path / "notes" / "todo.txt").read_text(encoding="utf-8") == "write docs\n"
    assert "notes/todo.txt" in captured.diff_stat
    assert "+write docs" in captured.diff


def test_apply_reports_context_mismatch(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = PatchWorkspace(tmp_path)
    stale = SERVICE_DIFF.replace("-alpha", "-before")

    with pytest.raises(PatchApplyError) as exc_info:
        workspace.apply(stale)

    assert exc_info.value.reason == "context_mismatch"
    assert exc_info.value.exit_code != 0
    assert (tmp_path / "service.txt").read_text(encoding="utf-8") == "alpha\n"


def test_apply_rejects_unsafe_paths_before_running_git(tmp_path: Path) -> None:
    workspace = PatchWorkspace(tmp_path)
    unsafe = "diff --git a/../outside.txt b/../outside.txt\n--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n"

    with pytest.raises(PatchApplyError) as exc_info:
        workspace.apply(unsafe)

    assert exc_info.value.reason == "path_violation"
    assert exc_info.value.command == []
