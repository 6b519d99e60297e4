"""
Finding Identity — vibe-review

PURPOSE:
    Derive stable identities for review findings. Findings never carry an
    assigned identity; every stage that needs to compare findings (the attempt
    loop, the lifecycle reconciler, inline comment publishing) goes through
    the helpers in this file.

    Two identities exist:

    FINGERPRINT (strict):
        sha1 of "pass|severity|file|line|title|body" with title and body
        normalized (trimmed, lowercased, whitespace collapsed). Two findings
        that differ only in whitespace or case share a fingerprint. Any change
        of pass, severity, file or line produces a new one.

    CANONICAL KEY (loose):
        "canonical:<path>|<line>|<title>" built from the repo-relative path,
        the line (only when positive) and the normalized title with markdown
        characters dropped. Used only as a
        fallback when fingerprints recorded on GitHub were computed in another
        environment (e.g. an absolute checkout path on a different machine).

CALLED BY:
    stage_1_run_attempts.py, stage_2_reconcile_lifecycle.py,
    stage_4_review_threads.py, stage_5_publish_review.py

DESIGN DECISIONS:
    - The fingerprint uses the file exactly as reported. Publishing relativizes
      the path before fingerprinting, which is why the canonical fallback
      exists at all.
    - macOS exposes /var and /tmp through /private symlinks, so a path that
      lands outside the workspace root is retried with that prefix stripped
      from both sides before giving up.
"""

import hashlib
import os
import posixpath
import re
from typing import Iterable, Optional

FINGERPRINT_KEY_PREFIX = "fingerprint:"
THREAD_KEY_PREFIX = "thread:"
CANONICAL_KEY_PREFIX = "canonical:"

# Prefixes the OS may add to a path through symlinks (macOS temp dirs).
PATH_ALIAS_PREFIXES = ("/private",)

_WHITESPACE_RE = re.compile(r"\s+")
_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_MARKDOWN_CHAR_RE = re.compile(r"[*_`>#]")


def normalize_finding_text(value: Optional[str]) -> str:
    """Trim, lowercase and collapse whitespace runs to a single space."""
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def strip_markdown(value: Optional[str]) -> str:
    """Drop images, html tags and emphasis/code/quote/heading characters."""
    if not value:
        return ""
    text = _MARKDOWN_IMAGE_RE.sub(" ", value)
    text = _HTML_TAG_RE.sub(" ", text)
    text = _MARKDOWN_CHAR_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def compute_finding_fingerprint(finding) -> str:
    """
    Compute the stable content hash of a finding.

    Args:
        finding: A round_output.Finding (anything with pass_, severity, file,
                 line, title and body attributes).

    Returns:
        40-character lowercase sha1 hex digest.
    """
    raw = "|".join([
        finding.pass_,
        finding.severity,
        finding.file or "",
        str(finding.line) if finding.line is not None else "",
        normalize_finding_text(finding.title),
        normalize_finding_text(finding.body),
    ])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def fingerprint_key(finding) -> str:
    """Lifecycle key for a finding: 'fingerprint:<hex>'."""
    return f"{FINGERPRINT_KEY_PREFIX}{compute_finding_fingerprint(finding)}"


def build_findings_fingerprint_key(findings: Iterable) -> str:
    """Sorted fingerprints joined with commas. Empty string for no findings."""
    return ",".join(sorted(compute_finding_fingerprint(f) for f in findings))


def to_repo_relative_path(raw_path: Optional[str], repo_root: str) -> Optional[str]:
    """
    Convert a reported path to a forward-slash path relative to repo_root.

    Relative paths are only normalized ("./" stripped, backslashes turned into
    slashes). Absolute paths are relativized against repo_root.

    Returns:
        The relative path, or None when the path is empty, escapes the root
        ("../"), or is absolute but outside repo_root.
    """
    if not raw_path or not raw_path.strip():
        return None
    trimmed = raw_path.strip()

    if os.path.isabs(trimmed):
        return _relative_inside(trimmed, repo_root)

    normalized = trimmed.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized or normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def build_canonical_key(
    file: Optional[str],
    line: Optional[int],
    title: Optional[str],
    workspace_root: str,
) -> Optional[str]:
    """
    Build the loose identity "canonical:<path>|<line>|<title>".

    Args:
        file: Reported file path (absolute or relative), may be None.
        line: Reported line; only included when it is a positive integer.
        title: Finding title; markdown characters are dropped before it is
            normalized, since titles read back from comment bodies lose them.
        workspace_root: Directory the path is relativized against.

    Returns:
        The canonical key, or None when file, line and title are all absent.
    """
    path_part = _canonical_path(file, workspace_root) if file and file.strip() else ""
    line_part = str(line) if isinstance(line, int) and line > 0 else ""
    title_part = normalize_finding_text(strip_markdown(title))

    if not path_part and not line_part and not title_part:
        return None
    return f"{CANONICAL_KEY_PREFIX}{path_part}|{line_part}|{title_part}"


def compute_canonical_key(finding, workspace_root: str) -> Optional[str]:
    """Canonical key of a round_output.Finding."""
    return build_canonical_key(finding.file, finding.line, finding.title, workspace_root)


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _relative_inside(absolute_path: str, root: str) -> Optional[str]:
    """Relative forward-slash path of absolute_path under root, or None."""
    resolved = os.path.normpath(absolute_path)
    root_resolved = os.path.normpath(os.path.abspath(root))
    try:
        relative = os.path.relpath(resolved, root_resolved)
    except ValueError:
        return None
    if relative == "." or relative == ".." or relative.startswith(".." + os.sep):
        return None
    return relative.replace(os.sep, "/")


def _strip_alias_prefix(path_value: str) -> str:
    for prefix in PATH_ALIAS_PREFIXES:
        if path_value == prefix or path_value.startswith(prefix + "/"):
            return path_value[len(prefix):] or "/"
    return path_value


def _canonical_path(file: str, workspace_root: str) -> str:
    relative = to_repo_relative_path(file, workspace_root)
    if relative:
        return relative

    trimmed = file.strip()
    if trimmed.startswith("/"):
        # /private/var/... vs /var/... (either side may carry the alias)
        relative = _relative_inside(
            _strip_alias_prefix(trimmed),
            _strip_alias_prefix(os.path.abspath(workspace_root)),
        )
        if relative:
            return relative

    return posixpath.normpath(trimmed.replace("\\", "/"))
