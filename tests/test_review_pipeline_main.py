"""
End-to-end tests for the review pipeline against the in-memory GitHub.
"""
import json
from unittest.mock import Mock, patch

import pytest
from conftest import ScriptedRounds, make_finding, make_round, managed_thread_for

from vibe_review.review_pipeline_main import (
    ConfigError,
    build_arg_parser,
    build_options,
    main,
    run_review,
)
from vibe_review.round_output import RoundOutputError
from vibe_review.stage_3_follow_up_issue import follow_up_marker
from vibe_review.stage_5_publish_review import REVIEW_SUMMARY_MARKER


def make_options(**overrides):
    options = {
        "workspace_root": "/repo",
        "repo": "o/r",
        "issue_id": 34,
        "issue_title": "Add login",
        "issue_url": None,
        "branch": "feat/login",
        "base_branch": "main",
        "pr_number": 12,
        "pr_url": None,
        "max_attempts": 5,
        "autofix": True,
        "publish": True,
        "dry_run": False,
        "strict": False,
        "followup_label": None,
        "agent_cmd": None,
    }
    options.update(overrides)
    return options


def repeating_finding_rounds():
    finding = make_finding(file="src/a.ts", line=10, title="X", severity="P1")
    return ScriptedRounds([make_round([finding], changed_files=["src/a.ts"])])


def test_same_findings_stop_early_without_follow_up(fake_github):
    result = run_review(make_options(max_attempts=5), fake_github, repeating_finding_rounds())

    attempts = result["attempts"]
    assert attempts["attempts_used"] == 2
    assert attempts["termination_reason"] == "same-fingerprints"
    assert len(attempts["unresolved_findings"]) == 1
    assert result["follow_up"] is None
    assert fake_github.issues == {}
    assert result["exit_code"] == 0

    summary_comments = fake_github.list_issue_comments(12)
    assert len(summary_comments) == 1
    assert summary_comments[0]["body"].startswith(REVIEW_SUMMARY_MARKER)
    assert "Termination: early-stop (reason=same-fingerprints)" in summary_comments[0]["body"]
    assert len(fake_github.list_review_comments(12)) == 1


def test_budget_exhausted_opens_follow_up(fake_github):
    result = run_review(make_options(max_attempts=2), fake_github, repeating_finding_rounds())

    assert result["attempts"]["termination_reason"] == "max-attempts"
    follow_up = result["follow_up"]
    assert follow_up["created"] is True
    assert follow_up["label"] == "bug"
    issue = fake_github.issues[follow_up["number"]]
    assert issue["body"].startswith(follow_up_marker(34))
    assert follow_up["url"] in result["summary"]


def test_rerun_updates_existing_follow_up(fake_github):
    run_review(make_options(max_attempts=1), fake_github, repeating_finding_rounds())
    second = run_review(make_options(max_attempts=1), fake_github, repeating_finding_rounds())

    assert second["follow_up"]["updated"] is True
    assert len(fake_github.list_open_issues()) == 1
    assert len(fake_github.list_review_comments(12)) == 1
    assert len(fake_github.list_issue_comments(12)) == 1


def test_strict_mode_exit_code(fake_github):
    result = run_review(make_options(strict=True), fake_github, repeating_finding_rounds())
    assert result["exit_code"] == 4


def test_convergence_closes_follow_ups_and_resolves_threads(fake_github):
    follow_up = fake_github.add_issue("old follow-up", follow_up_marker(34))
    fake_github.threads = [managed_thread_for(make_finding(title="Fixed"), "T1")]

    result = run_review(make_options(), fake_github, ScriptedRounds([make_round(run_id="clean")]))

    assert result["attempts"]["termination_reason"] == "completed"
    assert result["closed_follow_ups"] == [follow_up]
    assert fake_github.issues[follow_up]["state"] == "closed"
    assert result["thread_resolution"]["resolved"] == 1
    assert fake_github.threads[0]["isResolved"] is True
    assert result["lifecycle"]["source"] == "merged"
    assert result["lifecycle"]["unresolved"] == 0
    assert result["lifecycle"]["resolved"] == 1
    assert "observed=1, unresolved=0, resolved=1" in fake_github.list_issue_comments(12)[0]["body"]
    assert result["warnings"] == []
    assert result["exit_code"] == 0


def test_head_sha_is_looked_up_once(fake_github):
    fake_github.get_pull_request_head_sha = Mock(return_value="abc123def456")

    result = run_review(make_options(max_attempts=5), fake_github, repeating_finding_rounds())

    fake_github.get_pull_request_head_sha.assert_called_once_with(12)
    assert result["publish"]["inline_published"] == 1
    assert fake_github.list_review_comments(12)[0]["commit_id"] == "abc123def456"


def test_thread_resolution_failure_is_a_warning(fake_github):
    fake_github.threads = [managed_thread_for(make_finding(title="Fixed"), "T1")]
    fake_github.fail_thread_ops = {"T1"}

    result = run_review(make_options(strict=True), fake_github, ScriptedRounds([make_round()]))

    assert result["exit_code"] == 0
    assert any("thread auto-resolve warning" in w for w in result["warnings"])


def test_lifecycle_fetch_failure_is_reported(fake_github):
    fake_github.fail_list_threads = RuntimeError("GraphQL error: rate limited")

    result = run_review(make_options(), fake_github, repeating_finding_rounds())

    assert result["lifecycle"]["source"] == "current-run"
    assert any("rate limited" in w for w in result["warnings"])
    assert "### Warnings" in result["summary"]


def test_dry_run_without_github(fake_github):
    result = run_review(make_options(dry_run=True, max_attempts=1), None, repeating_finding_rounds())
    assert result["follow_up"]["created"] is False
    assert result["publish"] is None
    assert "Follow-up issue: dry-run (bug)" in result["summary"]


def test_dry_run_does_not_mutate(fake_github):
    existing = fake_github.add_issue("old follow-up", follow_up_marker(34))
    result = run_review(make_options(dry_run=True), fake_github, ScriptedRounds([make_round()]))

    assert result["closed_follow_ups"] == []
    assert fake_github.issues[existing]["state"] == "open"
    assert fake_github.list_issue_comments(12) == []
    assert result["thread_resolution"] is None


def test_no_publish_leaves_pr_untouched(fake_github):
    result = run_review(make_options(publish=False), fake_github, repeating_finding_rounds())
    assert result["publish"] is None
    assert fake_github.list_issue_comments(12) == []


def test_github_required_outside_dry_run():
    with pytest.raises(ConfigError):
        run_review(make_options(), None, repeating_finding_rounds())


def test_malformed_agent_output_aborts(fake_github):
    with pytest.raises(RoundOutputError):
        run_review(make_options(), fake_github, ScriptedRounds([{"version": 1}]))
    assert fake_github.list_issue_comments(12) == []


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("GITHUB_TOKEN", "GITHUB_REPOSITORY", "GEMINI_API_KEY", "VIBE_REVIEW_AGENT_CMD",
                 "VIBE_REVIEW_MODEL", "VIBE_REVIEW_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_build_options_merges_environment(clean_env):
    clean_env.setenv("VIBE_REVIEW_MAX_ATTEMPTS", "50")
    clean_env.setenv("VIBE_REVIEW_AGENT_CMD", "env-agent")
    clean_env.setenv("GITHUB_REPOSITORY", "o/r")

    args = build_arg_parser().parse_args(["--issue", "34", "--pr", "12", "--no-autofix", "--workspace-root", "/repo"])
    options = build_options(args)

    assert options["max_attempts"] == 20
    assert options["agent_cmd"] == "env-agent"
    assert options["repo"] == "o/r"
    assert options["autofix"] is False
    assert options["publish"] is True
    assert options["workspace_root"] == "/repo"

    args = build_arg_parser().parse_args(["--issue", "34", "--max-attempts", "3", "--agent-cmd", "flag-agent"])
    options = build_options(args)
    assert options["max_attempts"] == 3
    assert options["agent_cmd"] == "flag-agent"


def test_build_options_rejects_bad_issue(clean_env):
    args = build_arg_parser().parse_args(["--issue", "0"])
    with pytest.raises(ConfigError):
        build_options(args)


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_main_dry_run_success(mock_run, clean_env, capsys):
    mock_run.return_value = Mock(stdout=json.dumps(make_round()), stderr="")
    assert main(["--issue", "34", "--agent-cmd", "agent", "--dry-run"]) == 0
    assert "## vibe review" in capsys.readouterr().out


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_main_strict_unresolved_exits_4(mock_run, clean_env):
    mock_run.return_value = Mock(stdout=json.dumps(make_round([make_finding()])), stderr="")
    assert main(["--issue", "34", "--agent-cmd", "agent", "--dry-run", "--strict", "--max-attempts", "1"]) == 4


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_main_crash_exits_1(mock_run, clean_env):
    mock_run.return_value = Mock(stdout="not json at all", stderr="")
    assert main(["--issue", "34", "--agent-cmd", "agent", "--dry-run"]) == 1


def test_main_without_agent_exits_1(clean_env):
    assert main(["--issue", "34", "--dry-run"]) == 1
