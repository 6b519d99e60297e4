"""
Review Pipeline Main — vibe-review

PURPOSE:
    Entry point. Reads configuration, builds the GitHub client and the
    reviewing-agent runner, and runs the stages in order:

      Stage 1: Run attempts        (stage_1_run_attempts.py)
      Stage 4: Resolve threads     (stage_4_review_threads.py), only when the
               run converged to zero unresolved findings
      Stage 2: Reconcile lifecycle (stage_2_reconcile_lifecycle.py)
      Stage 3: Follow-up issue     (stage_3_follow_up_issue.py)
      Stage 5: Publish review      (stage_5_publish_review.py)

    Stage 4 also supplies the lifecycle totals fetch used by stage 2. Threads
    are resolved before the totals are fetched, so the published summary
    already counts them as resolved.

USAGE:
    vibe-review --issue 34 --issue-title "Add login" --pr 12 --branch feat/login

    or

    python -m vibe_review.review_pipeline_main --issue 34 --pr 12 --dry-run

CONFIGURATION:
    GITHUB_TOKEN             token with issues:write and pull-requests:write
    GITHUB_REPOSITORY        owner/name of the repository
    GEMINI_API_KEY           enables the Gemini runner when no command is set
    VIBE_REVIEW_AGENT_CMD    shell command of the reviewing agent
    VIBE_REVIEW_MODEL        Gemini model name
    VIBE_REVIEW_MAX_ATTEMPTS attempt budget (clamped to 1..20, default 5)
    VIBE_REVIEW_LOG_LEVEL    logging level (default INFO)

    Command-line flags override the environment.

EXIT CODES:
    0  success
    4  --strict and unresolved findings remain
    1  any error escaping the run (malformed agent output, GitHub failure,
       missing configuration)
"""

import argparse
import logging
import os
import sys
from typing import Optional

from vibe_review.github_api import GitHubAPI
from vibe_review.pass_round_runners import DEFAULT_GEMINI_MODEL, CommandPassRound, GeminiPassRound
from vibe_review.stage_1_run_attempts import DEFAULT_MAX_ATTEMPTS, normalize_max_attempts, run_review_attempts
from vibe_review.stage_2_reconcile_lifecycle import reconcile_lifecycle_totals
from vibe_review.stage_3_follow_up_issue import (
    close_follow_up_issues,
    ensure_follow_up_issue,
    should_close_follow_ups,
    should_ensure_follow_up,
)
from vibe_review.stage_4_review_threads import resolve_review_threads, summarize_review_thread_lifecycle_totals
from vibe_review.stage_5_publish_review import (
    build_review_summary_body,
    build_review_summary_markdown,
    publish_review_to_pull_request,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_UNRESOLVED_FINDINGS = 4

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(Exception):
    """Required configuration is missing or invalid."""


def run_review(options: dict, github, run_pass_round) -> dict:
    """
    Run one full review: attempts, threads, lifecycle, follow-up, publish.

    Args:
        options: Output of build_options().
        github: GitHubAPI (or a fake). May be None only for dry runs.
        run_pass_round: The pass-round capability for stage 1.

    Returns:
        dict with keys:
            - 'exit_code' (int): 0, or 4 under strict with unresolved findings
            - 'run_id' (str)
            - 'attempts' (dict): stage 1 result
            - 'lifecycle' (dict): stage 2 result
            - 'follow_up' (dict or None)
            - 'closed_follow_ups' (list[int])
            - 'publish' (dict or None)
            - 'thread_resolution' (dict or None)
            - 'summary' (str): markdown summary
            - 'warnings' (list[str])

    Raises:
        RoundOutputError: malformed agent output (fatal).
        ConfigError: a non-dry run without a GitHub client.
    """
    if github is None and not options["dry_run"]:
        raise ConfigError("GITHUB_TOKEN and GITHUB_REPOSITORY are required unless --dry-run is set")

    workspace_root = options["workspace_root"]
    pr_number = options.get("pr_number")
    warnings = []

    # -----------------------------------------------------------------------
    # STAGE 1: Run attempts
    # -----------------------------------------------------------------------

    base_input = {
        "workspace_root": workspace_root,
        "repo": options.get("repo"),
        "issue": {
            "id": options["issue_id"],
            "title": options["issue_title"],
            "url": options.get("issue_url"),
        },
        "branch": options.get("branch"),
        "base_branch": options.get("base_branch"),
        "pr": {"number": pr_number, "url": options.get("pr_url")},
    }
    attempts = run_review_attempts(
        run_pass_round, base_input, max_attempts=options["max_attempts"], autofix=options["autofix"]
    )
    run_id = attempts["final_output"].run_id
    unresolved = attempts["unresolved_findings"]

    can_publish = options["publish"] and github is not None and bool(pr_number) and pr_number > 0
    head_sha = None
    if can_publish and not options["dry_run"]:
        head_sha = github.get_pull_request_head_sha(pr_number)

    # -----------------------------------------------------------------------
    # STAGE 4: Resolve vibe-managed threads once the review converged
    # -----------------------------------------------------------------------

    thread_resolution = None
    if can_publish and not options["dry_run"] and not unresolved:
        warning = None
        try:
            thread_resolution = resolve_review_threads(github, pr_number, head_sha=head_sha)
            if thread_resolution["failed"] > 0:
                warning = (
                    "review: thread auto-resolve warning "
                    f"selected={thread_resolution['selected_threads']} "
                    f"resolved={thread_resolution['resolved']} failed={thread_resolution['failed']}."
                )
        except Exception as e:
            warning = f"review: thread auto-resolve warning {e}"
        if warning:
            logger.warning(warning)
            warnings.append(warning)

    # -----------------------------------------------------------------------
    # STAGE 2: Reconcile lifecycle totals with the PR's review threads
    # -----------------------------------------------------------------------

    fetch_remote_totals = None
    if github is not None:
        def fetch_remote_totals(pr):
            return summarize_review_thread_lifecycle_totals(github, pr, workspace_root)

    lifecycle = reconcile_lifecycle_totals(
        attempts["all_findings"], unresolved, fetch_remote_totals, pr_number, workspace_root
    )
    if lifecycle["warning"]:
        warnings.append(lifecycle["warning"])

    # -----------------------------------------------------------------------
    # STAGE 3: Follow-up issue (ensure on max-attempts, close on convergence)
    # -----------------------------------------------------------------------

    follow_up = None
    closed_follow_ups = []
    if should_ensure_follow_up(len(unresolved), attempts["termination_reason"]):
        preview = build_review_summary_markdown(
            options["issue_id"], options["issue_title"], pr_number, attempts, lifecycle, warnings=warnings
        )
        follow_up = ensure_follow_up_issue(
            github,
            options["issue_id"],
            options["issue_title"],
            unresolved,
            preview,
            dry_run=options["dry_run"],
            override_label=options.get("followup_label"),
        )
    elif should_close_follow_ups(len(unresolved), options["dry_run"]):
        closure = close_follow_up_issues(github, options["issue_id"], run_id)
        closed_follow_ups = closure["closed"]
        warnings.extend(closure["warnings"])

    summary = build_review_summary_markdown(
        options["issue_id"],
        options["issue_title"],
        pr_number,
        attempts,
        lifecycle,
        follow_up=follow_up,
        closed_follow_ups=closed_follow_ups,
        warnings=warnings,
    )

    # -----------------------------------------------------------------------
    # STAGE 5: Publish summary and inline comments
    # -----------------------------------------------------------------------

    publish = None
    if can_publish:
        publish = publish_review_to_pull_request(
            github,
            pr_number,
            build_review_summary_body(summary, head_sha),
            unresolved,
            dry_run=options["dry_run"],
            workspace_root=workspace_root,
            head_sha=head_sha,
        )

    exit_code = EXIT_UNRESOLVED_FINDINGS if unresolved and options["strict"] else EXIT_SUCCESS

    logger.info(
        "review finished: run_id=%s reason=%s unresolved=%d exit_code=%d",
        run_id, attempts["termination_reason"], len(unresolved), exit_code,
    )

    return {
        "exit_code": exit_code,
        "run_id": run_id,
        "attempts": attempts,
        "lifecycle": lifecycle,
        "follow_up": follow_up,
        "closed_follow_ups": closed_follow_ups,
        "publish": publish,
        "thread_resolution": thread_resolution,
        "summary": summary,
        "warnings": warnings,
    }


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vibe-review",
        description="Run AI review rounds on a change until the review converges.",
    )
    parser.add_argument("--issue", type=int, required=True, help="Source issue number")
    parser.add_argument("--issue-title", default="", help="Source issue title")
    parser.add_argument("--issue-url", default=None)
    parser.add_argument("--branch", default=None)
    parser.add_argument("--base-branch", default=None)
    parser.add_argument("--pr", type=int, default=None, help="Pull request number")
    parser.add_argument("--pr-url", default=None)
    parser.add_argument("--max-attempts", default=None, help="Attempt budget (1..20, default 5)")
    parser.add_argument("--no-autofix", action="store_true", help="Do not let the agent change files")
    parser.add_argument("--no-publish", action="store_true", help="Do not comment on the pull request")
    parser.add_argument("--dry-run", action="store_true", help="Mutate nothing on GitHub")
    parser.add_argument("--strict", action="store_true", help="Exit 4 when unresolved findings remain")
    parser.add_argument("--followup-label", choices=("bug", "enhancement"), default=None)
    parser.add_argument("--agent-cmd", default=None, help="Shell command of the reviewing agent")
    parser.add_argument("--workspace-root", default=None, help="Repository checkout (default: cwd)")
    return parser


def build_options(args: argparse.Namespace, environ=os.environ) -> dict:
    """Merge parsed flags with the environment. Flags win."""
    if args.issue is None or args.issue <= 0:
        raise ConfigError("--issue must be a positive issue number")

    max_attempts = args.max_attempts
    if max_attempts is None:
        max_attempts = environ.get("VIBE_REVIEW_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)

    return {
        "workspace_root": os.path.abspath(args.workspace_root or os.getcwd()),
        "repo": environ.get("GITHUB_REPOSITORY") or None,
        "issue_id": args.issue,
        "issue_title": args.issue_title or "",
        "issue_url": args.issue_url,
        "branch": args.branch,
        "base_branch": args.base_branch,
        "pr_number": args.pr if args.pr and args.pr > 0 else None,
        "pr_url": args.pr_url,
        "max_attempts": normalize_max_attempts(max_attempts),
        "autofix": not args.no_autofix,
        "publish": not args.no_publish,
        "dry_run": args.dry_run,
        "strict": args.strict,
        "followup_label": args.followup_label,
        "agent_cmd": args.agent_cmd or environ.get("VIBE_REVIEW_AGENT_CMD") or None,
    }


def build_github_client(options: dict, environ=os.environ) -> Optional[GitHubAPI]:
    """GitHubAPI from GITHUB_TOKEN / GITHUB_REPOSITORY, or None when unset."""
    token = environ.get("GITHUB_TOKEN")
    repo = options.get("repo")
    if not token or not repo:
        return None
    try:
        return GitHubAPI.from_slug(repo, token)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def build_pass_round_runner(options: dict, environ=os.environ):
    """CommandPassRound when a command is configured, else GeminiPassRound."""
    if options.get("agent_cmd"):
        return CommandPassRound(options["agent_cmd"], cwd=options["workspace_root"])
    api_key = environ.get("GEMINI_API_KEY")
    if api_key:
        return GeminiPassRound(api_key, model=environ.get("VIBE_REVIEW_MODEL") or DEFAULT_GEMINI_MODEL)
    raise ConfigError("no reviewing agent configured: set --agent-cmd, VIBE_REVIEW_AGENT_CMD or GEMINI_API_KEY")


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("VIBE_REVIEW_LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )

    try:
        options = build_options(args)
        github = build_github_client(options)
        runner = build_pass_round_runner(options)
        result = run_review(options, github, runner)
    except ConfigError as e:
        logger.error("configuration error: %s", e)
        return EXIT_FAILURE
    except Exception:
        logger.exception("review failed")
        return EXIT_FAILURE

    print(result["summary"])
    return result["exit_code"]


if __name__ == "__main__":
    sys.exit(main())
