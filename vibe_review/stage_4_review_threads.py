"""
Stage 4: Review Threads — vibe-review

PURPOSE:
    Work with the inline review threads on the pull request. Two things use
    them:

    LIFECYCLE TOTALS (read):
        The threads our inline comments opened are the only durable record of
        which findings earlier runs reported and which of them were resolved.
        summarize_review_thread_lifecycle_totals() condenses them into the
        remote totals that stage 2 merges with the current run.

    AUTO-RESOLUTION (write):
        When a run converges to zero unresolved findings, resolve_review_threads()
        replies to and resolves every unresolved thread we are allowed to
        touch.

    Both only look at "vibe-managed" threads: the first comment carries our
    fingerprint marker or comes from a known external review bot, AND every
    later reply is either our own "Resolved via ..." reply or from that bot.
    One human reply is enough to leave the thread alone.

CALLED BY:
    review_pipeline_main.py (auto-resolution on convergence)
    stage_2_reconcile_lifecycle.py (through the totals fetch callable)

DEPENDS ON:
    - GitHubAPI.list_review_threads / reply_to_review_thread /
      resolve_review_thread (or a fake with the same methods)

DESIGN DECISIONS:
    - Each thread maps to one lifecycle key: its fingerprint key when the first
      comment has a marker, else "thread:<id>". A key is unresolved if ANY of
      its threads is unresolved.
    - Threads are re-listed on every invocation and only those GitHub reports
      as unresolved are selected, so a second invocation never replies twice.
    - A failed reply or resolve is counted, not raised. The caller turns the
      counts into a warning.
"""

import logging
import re
from typing import Optional

from vibe_review.finding_identity import (
    FINGERPRINT_KEY_PREFIX,
    THREAD_KEY_PREFIX,
    build_canonical_key,
    strip_markdown,
)

logger = logging.getLogger(__name__)

EXTERNAL_AUTOMATION_AUTHORS = frozenset({"chatgpt-codex-connector", "chatgpt-codex-connector[bot]"})
RESOLVED_REPLY_MARKER = "Resolved via `vibe review threads resolve`."

_FINGERPRINT_RE = re.compile(r"<!--\s*vibe:fingerprint:([a-f0-9]+)\s*-->", re.IGNORECASE)
_PASS_RE = re.compile(r"\bPass:\s*`([^`]+)`", re.IGNORECASE)
_SEVERITY_TITLE_RE = re.compile(r"\*\*\[(P[0-3])\]\s+(.+)\*\*\s*$", re.IGNORECASE)
_BADGE_TITLE_RE = re.compile(r"\*\*.*?\s([A-Za-z].+?)\*\*")


def summarize_review_thread_lifecycle_totals(github, pr_number: int, workspace_root: str = ".") -> dict:
    """
    Fetch the remote lifecycle totals of a PR from its vibe-managed threads.

    Args:
        github: GitHubAPI (or fake) providing list_review_threads().
        pr_number: Pull request number.
        workspace_root: Root used to build canonical keys for thread paths.

    Returns:
        dict with keys:
            - 'observed', 'unresolved', 'resolved' (int)
            - 'unresolved_keys', 'resolved_keys' (list[str])
            - 'unresolved_severity_by_key' (dict[str, str])
            - 'canonical_key_by_key' (dict[str, str])
    """
    threads = [parse_review_thread(node) for node in github.list_review_threads(pr_number)]
    managed = [t for t in threads if t is not None and is_vibe_managed_thread(t)]

    status_by_key = {}
    severity_by_key = {}
    canonical_by_key = {}

    for thread in managed:
        key = build_lifecycle_finding_key(thread)
        if key is None:
            continue

        status = status_by_key.setdefault(key, {"unresolved": False, "resolved": False})
        if thread["is_resolved"]:
            status["resolved"] = True
        else:
            status["unresolved"] = True

        first = thread["comments"][0]
        severity, title = extract_severity_and_title(first["body"])
        if severity and key not in severity_by_key:
            severity_by_key[key] = severity

        canonical = build_canonical_key(
            first["path"], first["line"] or first["original_line"], title, workspace_root
        )
        if canonical and key not in canonical_by_key:
            canonical_by_key[key] = canonical

    unresolved_keys = sorted(k for k, s in status_by_key.items() if s["unresolved"])
    resolved_keys = sorted(k for k, s in status_by_key.items() if not s["unresolved"] and s["resolved"])

    return {
        "observed": len(status_by_key),
        "unresolved": len(unresolved_keys),
        "resolved": len(resolved_keys),
        "unresolved_keys": unresolved_keys,
        "resolved_keys": resolved_keys,
        "unresolved_severity_by_key": {k: v for k, v in severity_by_key.items() if k in unresolved_keys},
        "canonical_key_by_key": canonical_by_key,
    }


def resolve_review_threads(
    github,
    pr_number: int,
    dry_run: bool = False,
    vibe_managed_only: bool = True,
    head_sha: Optional[str] = None,
    body_override: Optional[str] = None,
) -> dict:
    """
    Reply to and resolve every unresolved (vibe-managed) thread of a PR.

    Args:
        github: GitHubAPI (or fake).
        pr_number: Pull request number.
        dry_run: Plan only; no replies, no resolutions.
        vibe_managed_only: Skip threads with human participation.
        head_sha: PR head, quoted in the reply.
        body_override: Reply text to use instead of the generated one.

    Returns:
        dict with keys 'pr_number', 'dry_run', 'total_threads',
        'selected_threads', 'planned', 'replied', 'resolved', 'skipped',
        'failed' (ints) and 'items' (per-thread dicts).
    """
    threads = [t for t in (parse_review_thread(n) for n in github.list_review_threads(pr_number)) if t]
    unresolved = [t for t in threads if not t["is_resolved"]]
    selected = [t for t in unresolved if is_vibe_managed_thread(t)] if vibe_managed_only else unresolved

    result = {
        "pr_number": pr_number,
        "dry_run": dry_run,
        "total_threads": len(threads),
        "selected_threads": len(selected),
        "planned": 0,
        "replied": 0,
        "resolved": 0,
        "skipped": len(unresolved) - len(selected),
        "failed": 0,
        "items": [],
    }

    for thread in selected:
        first = thread["comments"][0] if thread["comments"] else None
        _, title = extract_severity_and_title(first["body"] if first else None)
        item = {
            "thread_id": thread["id"],
            "path": first["path"] if first else None,
            "line": (first["line"] or first["original_line"]) if first else None,
            "title": title,
            "status": None,
            "reason": None,
            "reply_url": None,
        }
        result["items"].append(item)

        if dry_run:
            result["planned"] += 1
            item["status"] = "planned"
            continue

        body = body_override or build_auto_reply_body(pr_number, head_sha, thread)
        try:
            item["reply_url"] = github.reply_to_review_thread(thread["id"], body)
            result["replied"] += 1
            if not github.resolve_review_thread(thread["id"]):
                result["failed"] += 1
                item["status"] = "failed"
                item["reason"] = "thread resolve mutation did not return isResolved=true"
                continue
        except Exception as e:
            logger.warning("thread %s: auto-resolve failed: %s", thread["id"], e)
            result["failed"] += 1
            item["status"] = "failed"
            item["reason"] = str(e)
            continue

        result["resolved"] += 1
        item["status"] = "resolved"

    logger.info(
        "review threads PR #%s: selected=%d resolved=%d planned=%d failed=%d",
        pr_number, result["selected_threads"], result["resolved"], result["planned"], result["failed"],
    )
    return result


# ---------------------------------------------------------------------------
# THREAD CLASSIFICATION
# ---------------------------------------------------------------------------


def parse_review_thread(node) -> Optional[dict]:
    """Normalize a GraphQL reviewThread node. None when it has no id."""
    if not isinstance(node, dict) or not _clean(node.get("id")):
        return None
    comment_nodes = (node.get("comments") or {}).get("nodes") or []
    comments = [c for c in (_parse_comment(n) for n in comment_nodes) if c is not None]
    return {
        "id": _clean(node.get("id")),
        "is_resolved": bool(node.get("isResolved")),
        "is_outdated": bool(node.get("isOutdated")),
        "comments": comments,
    }


def extract_fingerprint(body: Optional[str]) -> Optional[str]:
    """The fingerprint hex in a vibe fingerprint marker, lowercased."""
    if not body:
        return None
    match = _FINGERPRINT_RE.search(body)
    return match.group(1).strip().lower() if match else None


def is_external_automation_author(login: Optional[str]) -> bool:
    if not login or not login.strip():
        return False
    return login.strip().lower() in EXTERNAL_AUTOMATION_AUTHORS


def is_managed_automation_reply(body: Optional[str]) -> bool:
    return bool(body) and RESOLVED_REPLY_MARKER in body


def is_vibe_managed_thread(thread: dict) -> bool:
    """
    True when the thread is safe to auto-resolve.

    The first comment must carry our fingerprint marker or come from a known
    external automation login, and every later reply must be our resolved
    reply or from external automation.
    """
    if not thread["comments"]:
        return False

    first = thread["comments"][0]
    if extract_fingerprint(first["body"]) is None and not is_external_automation_author(first["author_login"]):
        return False

    for comment in thread["comments"][1:]:
        if not is_managed_automation_reply(comment["body"]) and not is_external_automation_author(
            comment["author_login"]
        ):
            return False
    return True


def build_lifecycle_finding_key(thread: dict) -> Optional[str]:
    """'fingerprint:<hex>' from the first comment, else 'thread:<id>'."""
    if not thread["comments"]:
        return None
    fingerprint = extract_fingerprint(thread["comments"][0]["body"])
    if fingerprint:
        return f"{FINGERPRINT_KEY_PREFIX}{fingerprint}"
    return f"{THREAD_KEY_PREFIX}{thread['id']}"


def extract_severity_and_title(body: Optional[str]):
    """
    Parse (severity, title) out of an inline comment body.

    Our comments start with "**[P1] Title**". External bots use a badge
    style such as "**<sub>P2</sub> Title**"; for those only the title is
    recovered. Falls back to the first non-empty line that is not "Pass:".
    """
    if not body:
        return None, None
    lines = [line.strip() for line in body.splitlines()]

    for line in lines:
        if not line:
            continue
        match = _SEVERITY_TITLE_RE.search(line)
        if match:
            return match.group(1).upper(), strip_markdown(match.group(2))
        badge = _BADGE_TITLE_RE.search(line)
        if badge:
            cleaned = strip_markdown(badge.group(1))
            if cleaned:
                return None, cleaned

    for line in lines:
        cleaned = strip_markdown(line)
        if cleaned and not cleaned.lower().startswith("pass:"):
            return None, cleaned
    return None, None


def build_auto_reply_body(pr_number: int, head_sha: Optional[str], thread: dict) -> str:
    """The automated reply posted before resolving a thread."""
    first = thread["comments"][0] if thread["comments"] else None
    body = first["body"] if first else None
    severity, title = extract_severity_and_title(body)
    fingerprint = extract_fingerprint(body)
    pass_match = _PASS_RE.search(body or "")

    lines = [
        RESOLVED_REPLY_MARKER,
        "",
        f"- PR: #{pr_number}",
        f"- HEAD: {head_sha[:12] if head_sha else '(unknown)'}",
        f"- Thread: {thread['id']}",
        f"- Outdated: {'yes' if thread['is_outdated'] else 'no'}",
    ]
    if first and first["path"]:
        line = first["line"] or first["original_line"]
        location = f"{first['path']}:{line}" if line else first["path"]
        lines.append(f"- Location: `{location}`")
    if severity:
        lines.append(f"- Severity: {severity}")
    if title:
        lines.append(f"- Finding: {title}")
    if pass_match:
        lines.append(f"- Pass: `{pass_match.group(1).strip()}`")
    if fingerprint:
        lines.append(f"- Fingerprint: `{fingerprint}`")
    lines.extend(["", "Marking this thread as resolved."])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _clean(value) -> Optional[str]:
    return value.strip() or None if isinstance(value, str) else None


def _positive_int(value) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def _parse_comment(node) -> Optional[dict]:
    if not isinstance(node, dict) or not _clean(node.get("id")):
        return None
    author = node.get("author") if isinstance(node.get("author"), dict) else {}
    return {
        "id": _clean(node.get("id")),
        "body": _clean(node.get("body")),
        "url": _clean(node.get("url")),
        "path": _clean(node.get("path")),
        "line": _positive_int(node.get("line")),
        "original_line": _positive_int(node.get("originalLine")),
        "author_login": _clean(author.get("login")),
    }
