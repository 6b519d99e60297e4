"""
Stage 2: Reconcile Lifecycle — vibe-review

PURPOSE:
    Report observed / unresolved / resolved counts across the PR's whole
    review history, not just the latest attempt. The current run only knows
    what it saw; earlier runs left their findings behind as review threads on
    the PR (see stage_4_review_threads.py). This stage merges the two.

ALGORITHM:
    1. Current run: observed = fingerprint keys of all findings; unresolved =
       keys of the final round; resolved = observed - unresolved.
    2. Build canonical key -> {current fingerprint keys}.
    3. Remote keys that are not current fingerprint keys are looked up by
       their canonical key:
         0 matches   -> kept under their own identity
         1 match     -> remapped onto that current fingerprint key
         2+ matches  -> ambiguous, kept under their own identity
    4. union_unresolved = current unresolved + remote unresolved
       union_resolved   = (current resolved + remote resolved) - union_unresolved
       (unresolved always wins)
    5. resolved = max(|union_resolved|, observed - unresolved) where observed
       also counts remote resolved entries the key list is missing.
    6. Severity: current unresolved findings, plus each remote unresolved key
       not already counted, once, with its recorded severity.

CALLED BY:
    review_pipeline_main.py — after stage 1 (and stage 4 thread resolution on a
    converged run), before the follow-up decision.

DESIGN DECISIONS:
    - Remote totals are best effort. Any failure fetching or parsing them falls
      back to the current run alone and returns a warning string; it never
      fails the run.
    - Ambiguous canonical matches are skipped instead of guessed. Picking one
      (first match, majority) would silently merge two distinct findings.
"""

import logging
from typing import Callable, Optional

from vibe_review.finding_identity import compute_canonical_key, fingerprint_key

logger = logging.getLogger(__name__)

SEVERITIES = ("P0", "P1", "P2", "P3")


def reconcile_lifecycle_totals(
    all_findings: list,
    unresolved_findings: list,
    fetch_remote_totals: Optional[Callable[[int], dict]],
    pr_number: Optional[int],
    workspace_root: str = ".",
) -> dict:
    """
    Merge this run's findings with the remote lifecycle totals of the PR.

    Args:
        all_findings: Every finding observed this run (stage 1).
        unresolved_findings: Findings of the final round (stage 1).
        fetch_remote_totals: Callable (pr_number) -> lifecycle totals dict, as
                             returned by summarize_review_thread_lifecycle_totals.
                             None skips the remote merge.
        pr_number: The PR the run targets; None or <= 0 skips the remote merge.
        workspace_root: Root for canonical keys of the current findings.

    Returns:
        dict with keys:
            - 'observed', 'unresolved', 'resolved' (int)
            - 'severity' (dict P0..P3 -> int): unresolved by severity
            - 'source' (str): 'merged' or 'current-run'
            - 'remapped' (int): remote keys coalesced via canonical key
            - 'ambiguous' (int): remote keys left unmapped because 2+ current
              findings share their canonical key
            - 'warning' (str or None)
    """
    current_observed = {fingerprint_key(f) for f in all_findings}
    current_unresolved = {fingerprint_key(f) for f in unresolved_findings}
    current_resolved = current_observed - current_unresolved
    current_severity = _count_severity(unresolved_findings)

    current_only = {
        "observed": len(current_observed),
        "unresolved": len(current_unresolved),
        "resolved": len(current_resolved),
        "severity": current_severity,
        "source": "current-run",
        "remapped": 0,
        "ambiguous": 0,
        "warning": None,
    }

    if fetch_remote_totals is None or not pr_number or pr_number <= 0:
        return current_only

    # -----------------------------------------------------------------------
    # STEP 1: Fetch remote totals (best effort)
    # -----------------------------------------------------------------------

    try:
        remote = _validate_remote_totals(fetch_remote_totals(pr_number))
    except Exception as e:
        warning = f"review: lifecycle totals fallback to current run ({e})"
        logger.warning(warning)
        current_only["warning"] = warning
        return current_only

    # -----------------------------------------------------------------------
    # STEP 2: Canonical key -> current fingerprint keys
    # -----------------------------------------------------------------------

    by_canonical = {}
    for finding in all_findings:
        canonical = compute_canonical_key(finding, workspace_root)
        if canonical:
            by_canonical.setdefault(canonical, set()).add(fingerprint_key(finding))

    # -----------------------------------------------------------------------
    # STEP 3: Remap remote keys that need the canonical fallback
    # -----------------------------------------------------------------------

    remapped_keys = set()
    ambiguous_keys = set()

    def remap(key: str) -> str:
        if key in current_observed:
            return key
        canonical = remote["canonical_key_by_key"].get(key)
        if not canonical:
            return key
        matches = by_canonical.get(canonical, set())
        if len(matches) == 1:
            remapped_keys.add(key)
            return next(iter(matches))
        if len(matches) > 1:
            ambiguous_keys.add(key)
        return key

    remote_unresolved = {}
    for key in remote["unresolved_keys"]:
        remote_unresolved.setdefault(remap(key), key)
    remote_resolved = {remap(key) for key in remote["resolved_keys"]}

    # -----------------------------------------------------------------------
    # STEP 4: Union, unresolved wins
    # -----------------------------------------------------------------------

    union_unresolved = current_unresolved | set(remote_unresolved)
    union_resolved = (current_resolved | remote_resolved) - union_unresolved
    union_observed = current_observed | set(remote_unresolved) | remote_resolved

    missing_remote_resolved = max(0, remote["resolved"] - len(remote["resolved_keys"]))
    observed = len(union_observed) + missing_remote_resolved
    unresolved = len(union_unresolved)
    resolved = max(len(union_resolved), observed - unresolved)

    # -----------------------------------------------------------------------
    # STEP 5: Severity, each remote entry counted once
    # -----------------------------------------------------------------------

    severity = dict(current_severity)
    for merged_key, original_key in remote_unresolved.items():
        if merged_key in current_unresolved:
            continue
        recorded = remote["unresolved_severity_by_key"].get(original_key)
        if recorded in severity:
            severity[recorded] += 1

    logger.info(
        "lifecycle totals PR #%s: observed=%d unresolved=%d resolved=%d remapped=%d ambiguous=%d",
        pr_number, observed, unresolved, resolved, len(remapped_keys), len(ambiguous_keys),
    )

    return {
        "observed": observed,
        "unresolved": unresolved,
        "resolved": resolved,
        "severity": severity,
        "source": "merged",
        "remapped": len(remapped_keys),
        "ambiguous": len(ambiguous_keys),
        "warning": None,
    }


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _count_severity(findings: list) -> dict:
    counts = {s: 0 for s in SEVERITIES}
    for finding in findings:
        counts[finding.severity] += 1
    return counts


def _validate_remote_totals(raw) -> dict:
    """
    Check the shape of remote totals and fill optional maps.

    Raises:
        ValueError: when a required field is missing or mistyped.
    """
    if not isinstance(raw, dict):
        raise ValueError("remote totals must be an object")

    for field in ("unresolved_keys", "resolved_keys"):
        value = raw.get(field)
        if not isinstance(value, list) or not all(isinstance(k, str) and k for k in value):
            raise ValueError(f"remote totals: '{field}' must be a list of keys")

    resolved = raw.get("resolved", len(raw["resolved_keys"]))
    if not isinstance(resolved, int) or isinstance(resolved, bool) or resolved < 0:
        raise ValueError("remote totals: 'resolved' must be a non-negative integer")

    severity_by_key = raw.get("unresolved_severity_by_key") or {}
    canonical_by_key = raw.get("canonical_key_by_key") or {}
    if not isinstance(severity_by_key, dict) or not isinstance(canonical_by_key, dict):
        raise ValueError("remote totals: key maps must be objects")

    return {
        "unresolved_keys": raw["unresolved_keys"],
        "resolved_keys": raw["resolved_keys"],
        "resolved": resolved,
        "unresolved_severity_by_key": severity_by_key,
        "canonical_key_by_key": canonical_by_key,
    }
