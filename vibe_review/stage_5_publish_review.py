"""
Stage 5: Publish Review — vibe-review

PURPOSE:
    Turn the run result into something a human reads on the PR:

    1. A markdown summary (run id, attempts, termination, lifecycle counts,
       severity, per-pass table, unresolved and resolved findings, follow-up
       linkage, warnings).
    2. A single summary comment on the PR, found again on later runs by its
       marker and edited in place.
    3. One inline diff comment per unresolved finding that has a file and a
       line. Each carries a fingerprint marker so later runs do not post it
       twice and stage 4 can recognize the thread as vibe-managed.

    Markers:
      <!-- vibe:review-summary -->
      <!-- vibe:review-head:<sha> -->
      <!-- vibe:fingerprint:<hex> -->

CALLED BY:
    review_pipeline_main.py — after the follow-up decision (stage 3), so the
    summary can link the follow-up issue.

DESIGN DECISIONS:
    - The inline fingerprint is computed on the repo-relative path, the path
      GitHub stores on the comment. A finding reported with an absolute path
      therefore gets the same marker on every run.
    - A failed inline comment is skipped, not raised. The summary comment
      already lists every unresolved finding.
"""

import logging
import re
from typing import Optional

from vibe_review.finding_identity import compute_finding_fingerprint, to_repo_relative_path
from vibe_review.round_output import REVIEW_PASS_ORDER

logger = logging.getLogger(__name__)

REVIEW_SUMMARY_MARKER = "<!-- vibe:review-summary -->"
REVIEW_HEAD_MARKER_PREFIX = "<!-- vibe:review-head:"
FINGERPRINT_MARKER_PREFIX = "<!-- vibe:fingerprint:"
FINGERPRINT_MARKER_RE = re.compile(r"<!-- vibe:fingerprint:([a-f0-9]+) -->")


def format_termination(termination_reason: str) -> str:
    if termination_reason in ("completed", "max-attempts"):
        return termination_reason
    return f"early-stop (reason={termination_reason})"


def format_finding_line(finding) -> str:
    """Summary line: severity, then "file:line — title" when the finding has a location."""
    location = finding.location()
    prefix = f"{location} — " if location else ""
    return f"- [{finding.severity}] {prefix}{finding.title}"


def build_review_summary_markdown(
    issue_id: int,
    issue_title: str,
    pr_number: Optional[int],
    attempts: dict,
    lifecycle: dict,
    follow_up: Optional[dict] = None,
    closed_follow_ups: Optional[list] = None,
    warnings: Optional[list] = None,
) -> str:
    """
    Build the markdown summary of a review run.

    Args:
        issue_id, issue_title: The source issue.
        pr_number: The PR, or None.
        attempts: Result of stage 1 run_review_attempts().
        lifecycle: Result of stage 2 reconcile_lifecycle_totals().
        follow_up: Result of stage 3 ensure_follow_up_issue(), if it ran.
        closed_follow_ups: Issue numbers closed by stage 3.
        warnings: Recovered warnings collected during the run.
    """
    unresolved = attempts["unresolved_findings"]
    resolved = attempts["resolved_findings"]
    severity = lifecycle["severity"]

    lines = [
        "## vibe review",
        f"- Issue: #{issue_id} {issue_title}",
        f"- PR: #{pr_number}" if pr_number else "- PR: -",
        f"- Run ID: {attempts['final_output'].run_id}",
        f"- Attempts: {attempts['attempts_used']}/{attempts['max_attempts']}",
        f"- Termination: {format_termination(attempts['termination_reason'])}",
        f"- Findings: observed={lifecycle['observed']}, unresolved={lifecycle['unresolved']}, "
        f"resolved={lifecycle['resolved']} (source: {lifecycle['source']})",
        f"- Severity: P0={severity['P0']}, P1={severity['P1']}, P2={severity['P2']}, P3={severity['P3']}",
    ]

    if follow_up and follow_up.get("url"):
        action = "created" if follow_up.get("created") else "updated"
        lines.append(f"- Follow-up issue: {follow_up['url']} ({follow_up['label']}, {action})")
    elif follow_up:
        lines.append(f"- Follow-up issue: dry-run ({follow_up['label']})")

    if closed_follow_ups:
        closed = ", ".join(f"#{n}" for n in closed_follow_ups)
        lines.append(f"- Follow-up issues closed: {closed}")

    # -----------------------------------------------------------------------
    # Per-pass table (this run's findings)
    # -----------------------------------------------------------------------

    unresolved_ids = {compute_finding_fingerprint(f) for f in unresolved}
    lines += ["", "### Pass Results", "| Pass | Total | Unresolved | Resolved |", "|---|---|---|---|"]
    for name in REVIEW_PASS_ORDER:
        in_pass = [f for f in attempts["all_findings"] if f.pass_ == name]
        open_count = sum(1 for f in in_pass if compute_finding_fingerprint(f) in unresolved_ids)
        lines.append(f"| {name} | {len(in_pass)} | {open_count} | {len(in_pass) - open_count} |")

    lines += ["", "### Unresolved Findings"]
    lines += [format_finding_line(f) for f in unresolved] or ["- none"]

    if resolved:
        lines += ["", "### Resolved Findings"]
        lines += [format_finding_line(f) for f in resolved]

    if warnings:
        lines += ["", "### Warnings"]
        lines += [f"- {w}" for w in warnings]

    return "\n".join(lines)


def build_review_summary_body(markdown: str, head_sha: Optional[str] = None) -> str:
    lines = [REVIEW_SUMMARY_MARKER]
    head = (head_sha or "").strip().lower()
    if head:
        lines.append(f"{REVIEW_HEAD_MARKER_PREFIX}{head} -->")
    lines.append(markdown.strip())
    return "\n".join(lines) + "\n"


def build_inline_comment_body(finding, fingerprint: str) -> str:
    return "\n\n".join([
        f"**[{finding.severity}] {finding.title}**",
        finding.body,
        f"Pass: `{finding.pass_}`",
        f"{FINGERPRINT_MARKER_PREFIX}{fingerprint} -->",
    ])


def extract_fingerprints(body: Optional[str]) -> set:
    return set(FINGERPRINT_MARKER_RE.findall(body or ""))


def publish_review_to_pull_request(
    github,
    pr_number: Optional[int],
    summary_body: str,
    findings: list,
    dry_run: bool = False,
    workspace_root: str = ".",
    head_sha: Optional[str] = None,
) -> dict:
    """
    Upsert the summary comment and post inline comments for findings.

    Args:
        github: GitHubAPI (or a fake with the same methods).
        pr_number: Target PR; None or <= 0 publishes nothing.
        summary_body: Output of build_review_summary_body().
        findings: Unresolved findings of the run.
        dry_run: Publish nothing.
        workspace_root: Root used to make finding paths repo-relative.
        head_sha: Commit inline comments attach to; looked up on the PR when
            not given.

    Returns:
        dict with keys:
            - 'summary_comment_id' (int or None)
            - 'inline_published' (int)
            - 'inline_skipped' (int)
    """
    if not pr_number or pr_number <= 0 or dry_run:
        return {"summary_comment_id": None, "inline_published": 0, "inline_skipped": len(findings)}

    # -----------------------------------------------------------------------
    # STEP 1: Summary comment upsert
    # -----------------------------------------------------------------------

    summary_comment_id = _upsert_summary_comment(github, pr_number, summary_body)

    # -----------------------------------------------------------------------
    # STEP 2: Inline comments, one per new fingerprint
    # -----------------------------------------------------------------------

    existing = set()
    for comment in github.list_review_comments(pr_number):
        existing |= extract_fingerprints(comment.get("body"))

    if not head_sha:
        head_sha = github.get_pull_request_head_sha(pr_number)
    published = 0
    skipped = 0

    for finding in findings:
        path = to_repo_relative_path(finding.file, workspace_root) if finding.file else None
        if not path or not finding.line or not head_sha:
            skipped += 1
            continue

        located = finding if finding.file == path else finding.model_copy(update={"file": path})
        fingerprint = compute_finding_fingerprint(located)
        if fingerprint in existing:
            skipped += 1
            continue

        try:
            github.create_review_comment(
                pr_number, build_inline_comment_body(finding, fingerprint), head_sha, path, finding.line
            )
        except Exception as e:
            logger.warning("inline comment %s:%s on PR #%s failed: %s", path, finding.line, pr_number, e)
            skipped += 1
            continue

        existing.add(fingerprint)
        published += 1

    logger.info(
        "published review to PR #%s: summary_comment=%s inline_published=%d inline_skipped=%d",
        pr_number, summary_comment_id, published, skipped,
    )
    return {"summary_comment_id": summary_comment_id, "inline_published": published, "inline_skipped": skipped}


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _upsert_summary_comment(github, pr_number: int, body: str) -> Optional[int]:
    for comment in github.list_issue_comments(pr_number):
        if REVIEW_SUMMARY_MARKER in (comment.get("body") or "") and comment.get("id"):
            github.update_comment(comment["id"], body)
            return comment["id"]
    created = github.post_comment(pr_number, body)
    return created.get("id")
