"""
Stage 3: Follow-up Issue — vibe-review

PURPOSE:
    Carry unresolved findings past the attempt budget. When a run spends every
    attempt and findings still remain, a follow-up issue is opened (or the
    existing one refreshed) so the work is not lost. When a later run converges
    to zero unresolved findings, those follow-up issues are closed.

    The two paths are mutually exclusive per run:

    ENSURE (unresolved > 0 AND termination_reason == "max-attempts"):
      1. Classify the label (bug / enhancement)
      2. Look up OPEN issues whose body carries the source marker
      3. Found     -> update title, body and labels
         Not found -> create
      4. The tracker rejected the labels -> retry once without labels

    CLOSE (unresolved == 0, not a dry run):
      1. Look up every OPEN issue carrying the source marker
      2. Comment with the run id, then close
      3. A failure on one issue becomes a warning; the others still close

    The source marker is an HTML comment in the issue body:
      <!-- vibe:review-followup:source-issue:34 -->

CALLED BY:
    review_pipeline_main.py — after stage 2, before the summary is published.

DESIGN DECISIONS:
    - Other termination reasons (no-autofix, same-fingerprints, ...) never
      open a follow-up. They mean the agent gave up, not that the budget ran
      out, and the summary already reports them.
    - Matching is on the marker only. Titles are edited by humans; the marker
      survives that.
"""

import logging
import re
from typing import Optional

from vibe_review.gh_retry import error_text

logger = logging.getLogger(__name__)

FOLLOW_UP_MARKER_PREFIX = "<!-- vibe:review-followup:source-issue:"
FOLLOW_UP_MARKER_RE = re.compile(r"<!-- vibe:review-followup:source-issue:(\d+) -->", re.IGNORECASE)
FOLLOW_UP_TITLE_LIMIT = 240

BUG_KINDS = ("defect", "regression", "security")
HIGH_SEVERITIES = ("P0", "P1")
LABEL_OVERRIDES = ("bug", "enhancement")


def follow_up_marker(source_issue_id: int) -> str:
    return f"{FOLLOW_UP_MARKER_PREFIX}{source_issue_id} -->"


def classify_follow_up_label(findings: list, override: Optional[str] = None) -> str:
    """
    Pick the follow-up label.

    An explicit override wins. Otherwise any defect/regression/security kind,
    or any P0/P1 severity, makes it a bug. Everything else is an enhancement.
    """
    if override in LABEL_OVERRIDES:
        return override
    if any(f.kind in BUG_KINDS for f in findings):
        return "bug"
    if any(f.severity in HIGH_SEVERITIES for f in findings):
        return "bug"
    return "enhancement"


def should_ensure_follow_up(unresolved_count: int, termination_reason: str) -> bool:
    return unresolved_count > 0 and termination_reason == "max-attempts"


def should_close_follow_ups(unresolved_count: int, dry_run: bool) -> bool:
    return unresolved_count == 0 and not dry_run


def build_follow_up_title(source_issue_id: int, source_issue_title: str) -> str:
    title = f"review follow-up: unresolved findings for #{source_issue_id} {source_issue_title}"
    return title[:FOLLOW_UP_TITLE_LIMIT]


def build_follow_up_body(source_issue_id: int, findings: list, review_summary: str) -> str:
    lines = [
        follow_up_marker(source_issue_id),
        "",
        f"Auto-generated by `vibe review` after unresolved findings remained for #{source_issue_id}.",
        "",
        "## Review Summary",
        review_summary,
        "",
        "## Unresolved Findings",
    ]
    for finding in findings:
        location = finding.location()
        suffix = f" ({location})" if location else ""
        lines.append(f"- [{finding.severity}] {finding.title}{suffix}")
    return "\n".join(lines)


def extract_follow_up_source_issue(body: Optional[str]) -> Optional[int]:
    """The source issue number a follow-up body points at, or None."""
    if not body:
        return None
    match = FOLLOW_UP_MARKER_RE.search(body)
    if not match:
        return None
    number = int(match.group(1))
    return number if number > 0 else None


def find_open_follow_up_issues(github, source_issue_id: int) -> list:
    """OPEN issues whose body carries the source marker for source_issue_id."""
    return [
        issue for issue in github.list_open_issues()
        if extract_follow_up_source_issue(issue.get("body")) == source_issue_id
    ]


def is_missing_label_error(error: BaseException) -> bool:
    text = error_text(error).lower()
    return "label" in text and ("not found" in text or "could not add" in text or "invalid" in text)


def ensure_follow_up_issue(
    github,
    source_issue_id: int,
    source_issue_title: str,
    findings: list,
    review_summary: str,
    dry_run: bool = False,
    override_label: Optional[str] = None,
) -> dict:
    """
    Create or refresh the follow-up issue for source_issue_id.

    Calling this twice for the same source issue leaves exactly one open
    follow-up issue.

    Args:
        github: GitHubAPI (or a fake with the same methods).
        source_issue_id: The issue the review ran for.
        source_issue_title: Its title, used in the follow-up title.
        findings: Unresolved findings to list in the body.
        review_summary: Markdown summary embedded in the body.
        dry_run: Compute everything, mutate nothing.
        override_label: 'bug' or 'enhancement' to skip classification.

    Returns:
        dict with keys:
            - 'number' (int or None)
            - 'url' (str or None)
            - 'label' (str): 'bug' or 'enhancement'
            - 'created' (bool)
            - 'updated' (bool)
    """
    label = classify_follow_up_label(findings, override_label)
    title = build_follow_up_title(source_issue_id, source_issue_title)
    body = build_follow_up_body(source_issue_id, findings, review_summary)

    if dry_run:
        logger.info("follow-up for #%s: dry run, label=%s", source_issue_id, label)
        return {"number": None, "url": None, "label": label, "created": False, "updated": False}

    # -----------------------------------------------------------------------
    # STEP 1: Existing follow-up -> update in place
    # -----------------------------------------------------------------------

    existing = find_open_follow_up_issues(github, source_issue_id)
    if existing:
        issue = existing[0]
        number = issue.get("number")
        _with_label_fallback(
            lambda labels: github.update_issue(number, title, body, labels), [label], f"update #{number}"
        )
        logger.info("follow-up for #%s: updated #%s (%s)", source_issue_id, number, label)
        return {
            "number": number,
            "url": issue.get("html_url") or issue.get("url"),
            "label": label,
            "created": False,
            "updated": True,
        }

    # -----------------------------------------------------------------------
    # STEP 2: None yet -> create
    # -----------------------------------------------------------------------

    created = _with_label_fallback(
        lambda labels: github.create_issue(title, body, labels), [label], "create"
    )
    logger.info("follow-up for #%s: created #%s (%s)", source_issue_id, created.get("number"), label)
    return {
        "number": created.get("number"),
        "url": created.get("url"),
        "label": label,
        "created": True,
        "updated": False,
    }


def close_follow_up_issues(github, source_issue_id: int, run_id: str, dry_run: bool = False) -> dict:
    """
    Close every open follow-up issue of source_issue_id after convergence.

    Returns:
        dict with keys:
            - 'closed' (list[int]): issue numbers closed
            - 'warnings' (list[str]): per-issue failures
    """
    result = {"closed": [], "warnings": []}
    if dry_run:
        return result

    for issue in find_open_follow_up_issues(github, source_issue_id):
        number = issue.get("number")
        comment = (
            f"Closed by `vibe review` run `{run_id}`: no unresolved findings remain for #{source_issue_id}."
        )
        try:
            github.post_comment(number, comment)
            github.close_issue(number)
        except Exception as e:
            warning = f"review: failed to close follow-up #{number} ({e})"
            logger.warning(warning)
            result["warnings"].append(warning)
            continue
        logger.info("follow-up #%s closed for source #%s", number, source_issue_id)
        result["closed"].append(number)

    return result


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _with_label_fallback(mutate, labels: list, context: str):
    try:
        return mutate(labels)
    except Exception as e:
        if not labels or not is_missing_label_error(e):
            raise
        logger.warning("follow-up %s: labels %s rejected, retrying without labels", context, labels)
        return mutate([])
