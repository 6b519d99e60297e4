"""
Stage 1: Run Attempts — vibe-review

PURPOSE:
    Drive the reviewing agent through 1..N review rounds and decide, exactly
    once, why the loop stopped. Every round runs all five passes
    (implementation, security, quality, ux, ops) and may apply an autofix
    before reporting.

    Per attempt, in this fixed priority order:
      1. Run the round. Non-conforming output raises RoundOutputError (fatal,
         no retry).
      2. Merge the round's findings into the run-wide map keyed by fingerprint.
         The first occurrence of a fingerprint wins; later rounds never
         overwrite it.
      3. No findings                          -> "completed"
      4. attempt == max_attempts              -> "max-attempts"
      5. autofix off, or not applied          -> "no-autofix"
      6. autofix applied, no changed files    -> "no-autofix-changes"
      7. same sorted fingerprints as previous -> "same-fingerprints"
      8. otherwise remember the fingerprints and go again

CALLED BY:
    review_pipeline_main.py — passes the pass-round capability (a callable
    taking the round input dict) and the base round input.

DESIGN DECISIONS:
    - This loop never decides about follow-up issues. That happens later, in
      stage 3, from the termination reason this stage returns.
    - Unresolved findings are the final round's findings, deduplicated by
      fingerprint and read back from the run-wide map, so they are always a
      fingerprint-subset of everything observed this run.
"""

import logging
from typing import Callable

from vibe_review.finding_identity import build_findings_fingerprint_key, compute_finding_fingerprint
from vibe_review.round_output import REVIEW_PASS_ORDER, parse_round_output

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
MAX_ATTEMPTS_CEILING = 20

TERMINATION_REASONS = (
    "completed",
    "max-attempts",
    "no-autofix",
    "no-autofix-changes",
    "same-fingerprints",
)


def normalize_max_attempts(value) -> int:
    """Clamp the attempt budget to [1, 20]. Non-numeric values give 5."""
    try:
        rounded = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_MAX_ATTEMPTS
    return max(1, min(MAX_ATTEMPTS_CEILING, rounded))


def run_review_attempts(
    run_pass_round: Callable[[dict], object],
    base_input: dict,
    max_attempts=DEFAULT_MAX_ATTEMPTS,
    autofix: bool = True,
) -> dict:
    """
    Run review rounds until one of the termination rules fires.

    This is the ONLY public entry point of the stage.

    Args:
        run_pass_round: The pass-round capability. Called with the round input
                        dict; returns a RoundOutput or a dict that must satisfy
                        the round output contract.
        base_input: Round input without the per-attempt fields. Expected keys:
                    workspace_root, repo, issue {id,title,url}, branch,
                    base_branch, pr {number,url}.
        max_attempts: Attempt budget, clamped to [1, 20].
        autofix: Whether the agent may change files between rounds.

    Returns:
        dict with keys:
            - 'attempts_used' (int)
            - 'max_attempts' (int): the clamped budget
            - 'termination_reason' (str): one of TERMINATION_REASONS
            - 'final_output' (RoundOutput): output of the last round
            - 'all_findings' (list[Finding]): every finding observed this run,
              one per fingerprint, in first-seen order
            - 'unresolved_findings' (list[Finding])
            - 'resolved_findings' (list[Finding])
            - 'attempts' (list[dict]): per-attempt {attempt, run_id,
              findings, autofix_applied, changed_files}

    Raises:
        RoundOutputError: the agent returned non-conforming output.
    """
    budget = normalize_max_attempts(max_attempts)

    all_findings = {}
    previous_fingerprint_key = None
    attempts = []
    final_output = None
    termination_reason = "max-attempts"
    attempt = 0

    while attempt < budget:
        attempt += 1

        # -------------------------------------------------------------------
        # STEP 1: Run the round (fatal on a malformed result)
        # -------------------------------------------------------------------

        round_input = {
            "version": 1,
            **base_input,
            "attempt": attempt,
            "max_attempts": budget,
            "autofix": bool(autofix),
            "passes": list(REVIEW_PASS_ORDER),
        }
        output = parse_round_output(run_pass_round(round_input))
        final_output = output
        findings = output.findings()

        # -------------------------------------------------------------------
        # STEP 2: Merge into the run-wide map (first occurrence wins)
        # -------------------------------------------------------------------

        for finding in findings:
            all_findings.setdefault(compute_finding_fingerprint(finding), finding)

        attempts.append({
            "attempt": attempt,
            "run_id": output.run_id,
            "findings": len(findings),
            "autofix_applied": output.autofix.applied,
            "changed_files": list(output.autofix.changed_files),
        })
        logger.info(
            "review attempt %d/%d run_id=%s findings=%d autofix_applied=%s changed_files=%d",
            attempt, budget, output.run_id, len(findings),
            output.autofix.applied, len(output.autofix.changed_files),
        )

        # -------------------------------------------------------------------
        # STEPS 3-8: Termination policy
        # -------------------------------------------------------------------

        if not findings:
            termination_reason = "completed"
            break

        if attempt >= budget:
            termination_reason = "max-attempts"
            break

        if not autofix or not output.autofix.applied:
            termination_reason = "no-autofix"
            break

        if not output.autofix.changed_files:
            termination_reason = "no-autofix-changes"
            break

        current_fingerprint_key = build_findings_fingerprint_key(findings)
        if previous_fingerprint_key is not None and current_fingerprint_key == previous_fingerprint_key:
            termination_reason = "same-fingerprints"
            break
        previous_fingerprint_key = current_fingerprint_key

    unresolved_fingerprints = []
    for finding in final_output.findings():
        fingerprint = compute_finding_fingerprint(finding)
        if fingerprint not in unresolved_fingerprints:
            unresolved_fingerprints.append(fingerprint)

    unresolved_findings = [all_findings[fp] for fp in unresolved_fingerprints]
    resolved_findings = [f for fp, f in all_findings.items() if fp not in unresolved_fingerprints]

    logger.info(
        "review loop stopped: reason=%s attempts=%d/%d observed=%d unresolved=%d",
        termination_reason, attempt, budget, len(all_findings), len(unresolved_findings),
    )

    return {
        "attempts_used": attempt,
        "max_attempts": budget,
        "termination_reason": termination_reason,
        "final_output": final_output,
        "all_findings": list(all_findings.values()),
        "unresolved_findings": unresolved_findings,
        "resolved_findings": resolved_findings,
        "attempts": attempts,
    }
