"""
Tests for follow-up issue creation, refresh and closure.
"""
import pytest
from conftest import make_finding

from vibe_review.stage_3_follow_up_issue import (
    build_follow_up_body,
    build_follow_up_title,
    classify_follow_up_label,
    close_follow_up_issues,
    ensure_follow_up_issue,
    extract_follow_up_source_issue,
    follow_up_marker,
    should_close_follow_ups,
    should_ensure_follow_up,
)


@pytest.mark.parametrize(
    "findings, override, expected",
    [
        ([make_finding(severity="P3", kind="defect")], None, "bug"),
        ([make_finding(severity="P3", kind="security")], None, "bug"),
        ([make_finding(severity="P0", kind="docs")], None, "bug"),
        ([make_finding(severity="P2", kind="improvement")], None, "enhancement"),
        ([make_finding(severity="P2", kind=None)], None, "enhancement"),
        ([make_finding(severity="P0", kind="defect")], "enhancement", "enhancement"),
        ([make_finding(severity="P3")], "bug", "bug"),
    ],
)
def test_classify_follow_up_label(findings, override, expected):
    assert classify_follow_up_label(findings, override) == expected


def test_follow_up_decisions():
    assert should_ensure_follow_up(2, "max-attempts") is True
    assert should_ensure_follow_up(2, "same-fingerprints") is False
    assert should_ensure_follow_up(0, "max-attempts") is False
    assert should_close_follow_ups(0, dry_run=False) is True
    assert should_close_follow_ups(0, dry_run=True) is False
    assert should_close_follow_ups(1, dry_run=False) is False


def test_title_is_truncated():
    title = build_follow_up_title(34, "x" * 500)
    assert title.startswith("review follow-up: unresolved findings for #34 ")
    assert len(title) == 240


def test_body_carries_marker_and_findings():
    body = build_follow_up_body(34, [make_finding(title="Leak")], "## vibe review")
    assert body.startswith("<!-- vibe:review-followup:source-issue:34 -->")
    assert "- [P1] Leak (src/a.ts:10)" in body
    assert extract_follow_up_source_issue(body) == 34
    assert extract_follow_up_source_issue("no marker") is None


def test_ensure_creates_then_updates_single_issue(fake_github):
    findings = [make_finding(kind="defect")]

    first = ensure_follow_up_issue(fake_github, 34, "Add login", findings, "summary v1")
    second = ensure_follow_up_issue(fake_github, 34, "Add login", findings, "summary v2")

    assert first["created"] is True and first["updated"] is False
    assert second["created"] is False and second["updated"] is True
    assert second["number"] == first["number"]
    assert first["label"] == "bug"

    open_issues = fake_github.list_open_issues()
    assert len(open_issues) == 1
    assert "summary v2" in open_issues[0]["body"]
    assert open_issues[0]["labels"] == ["bug"]


def test_ensure_ignores_follow_ups_of_other_issues(fake_github):
    fake_github.add_issue("other follow-up", follow_up_marker(99))
    result = ensure_follow_up_issue(fake_github, 34, "Add login", [make_finding()], "s")
    assert result["created"] is True
    assert len(fake_github.list_open_issues()) == 2


def test_ensure_dry_run_mutates_nothing(fake_github):
    result = ensure_follow_up_issue(fake_github, 34, "Add login", [make_finding()], "s", dry_run=True)
    assert result == {"number": None, "url": None, "label": "bug", "created": False, "updated": False}
    assert fake_github.issues == {}


def test_ensure_retries_without_rejected_labels(fake_github):
    fake_github.reject_labels = True
    result = ensure_follow_up_issue(fake_github, 34, "Add login", [make_finding()], "s")

    assert result["created"] is True
    assert fake_github.issues[result["number"]]["labels"] == []
    assert [c[0] for c in fake_github.calls] == ["create_issue", "create_issue"]


def test_ensure_propagates_other_errors(fake_github):
    def broken(*args, **kwargs):
        raise RuntimeError("HTTP 500")

    fake_github.create_issue = broken
    with pytest.raises(RuntimeError):
        ensure_follow_up_issue(fake_github, 34, "Add login", [make_finding()], "s")


def test_close_closes_every_marked_issue(fake_github):
    a = fake_github.add_issue("f1", follow_up_marker(34))
    b = fake_github.add_issue("f2", "text\n" + follow_up_marker(34))
    other = fake_github.add_issue("f3", follow_up_marker(7))

    result = close_follow_up_issues(fake_github, 34, "run-9")

    assert sorted(result["closed"]) == sorted([a, b])
    assert result["warnings"] == []
    assert fake_github.issues[other]["state"] == "open"
    assert "run-9" in fake_github.issue_comments[a][0]["body"]


def test_close_failure_becomes_warning_and_others_proceed(fake_github):
    a = fake_github.add_issue("f1", follow_up_marker(34))
    b = fake_github.add_issue("f2", follow_up_marker(34))
    fake_github.fail_close = {a}

    result = close_follow_up_issues(fake_github, 34, "run-9")

    assert result["closed"] == [b]
    assert len(result["warnings"]) == 1
    assert f"#{a}" in result["warnings"][0]
    assert fake_github.issues[a]["state"] == "open"


def test_close_dry_run_does_nothing(fake_github):
    a = fake_github.add_issue("f1", follow_up_marker(34))
    assert close_follow_up_issues(fake_github, 34, "run-9", dry_run=True) == {"closed": [], "warnings": []}
    assert fake_github.issues[a]["state"] == "open"
