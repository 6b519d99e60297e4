"""
Pytest fixtures for vibe-review tests.

Provides an in-memory GitHub stand-in with the same methods as GitHubAPI,
finding/round builders and scripted pass-round callables.
"""
import pytest

from vibe_review.finding_identity import compute_finding_fingerprint
from vibe_review.round_output import REVIEW_PASS_ORDER, Finding
from vibe_review.stage_5_publish_review import build_inline_comment_body


def make_finding(**overrides) -> Finding:
    data = {
        "id": "f1",
        "pass": "implementation",
        "severity": "P1",
        "title": "X",
        "body": "Details",
        "file": "src/a.ts",
        "line": 10,
        "kind": None,
    }
    data.update(overrides)
    return Finding.model_validate(data)


def make_round(findings=(), run_id="run-1", applied=True, changed_files=("src/a.ts",)) -> dict:
    """A round output dict; findings are placed in the pass they name."""
    passes = []
    for name in REVIEW_PASS_ORDER:
        passes.append({
            "name": name,
            "summary": f"{name} pass",
            "findings": [f.model_dump(by_alias=True) for f in findings if f.pass_ == name],
        })
    return {
        "version": 1,
        "run_id": run_id,
        "passes": passes,
        "autofix": {"applied": applied, "summary": None, "changed_files": list(changed_files)},
    }


class ScriptedRounds:
    """Pass-round callable returning prepared outputs in order; the last one repeats."""

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.inputs = []

    def __call__(self, round_input):
        self.inputs.append(round_input)
        index = min(len(self.inputs) - 1, len(self.outputs) - 1)
        return self.outputs[index]


def make_thread_node(thread_id, comments, is_resolved=False, is_outdated=False) -> dict:
    """
    Raw GraphQL reviewThread node.

    comments: list of dicts with body and optional author/path/line.
    """
    nodes = []
    for i, comment in enumerate(comments):
        nodes.append({
            "id": f"{thread_id}-c{i}",
            "body": comment["body"],
            "url": f"https://github.com/o/r/pull/1#discussion_{thread_id}_{i}",
            "path": comment.get("path"),
            "line": comment.get("line"),
            "originalLine": comment.get("original_line"),
            "author": {"login": comment.get("author", "vibe-bot")},
        })
    return {
        "id": thread_id,
        "isResolved": is_resolved,
        "isOutdated": is_outdated,
        "comments": {"nodes": nodes},
    }


def managed_thread_for(finding, thread_id, is_resolved=False, replies=()) -> dict:
    """A thread opened by our inline comment for finding (relative path)."""
    body = build_inline_comment_body(finding, compute_finding_fingerprint(finding))
    comments = [{"body": body, "path": finding.file, "line": finding.line}]
    comments.extend(replies)
    return make_thread_node(thread_id, comments, is_resolved=is_resolved)


class FakeGitHub:
    """In-memory GitHub with the GitHubAPI method surface."""

    def __init__(self, head_sha="abc123def456"):
        self.issues = {}
        self.issue_comments = {}
        self.review_comments = {}
        self.threads = []
        self.head_sha = head_sha
        self.next_id = 100
        self.reject_labels = False
        self.fail_close = set()
        self.fail_thread_ops = set()
        self.fail_list_threads = None
        self.replies = []
        self.calls = []

    def _id(self):
        self.next_id += 1
        return self.next_id

    # issues

    def add_issue(self, title, body, state="open", labels=()):
        number = self._id()
        self.issues[number] = {
            "number": number,
            "title": title,
            "body": body,
            "state": state,
            "labels": list(labels),
            "html_url": f"https://github.com/o/r/issues/{number}",
        }
        return number

    def list_open_issues(self):
        return [dict(i) for i in self.issues.values() if i["state"] == "open"]

    def _check_labels(self, labels):
        if labels and self.reject_labels:
            raise RuntimeError(f"could not add label: '{labels[0]}' not found")

    def create_issue(self, title, body, labels):
        self.calls.append(("create_issue", title))
        self._check_labels(labels)
        number = self.add_issue(title, body, labels=labels)
        return {"number": number, "url": self.issues[number]["html_url"]}

    def update_issue(self, issue_number, title, body, labels):
        self.calls.append(("update_issue", issue_number))
        self._check_labels(labels)
        issue = self.issues[issue_number]
        issue.update({"title": title, "body": body})
        issue["labels"] = sorted(set(issue["labels"]) | set(labels))

    def post_comment(self, issue_number, body):
        if issue_number in self.fail_close:
            raise RuntimeError(f"HTTP 500 on issue #{issue_number}")
        comment = {"id": self._id(), "body": body}
        self.issue_comments.setdefault(issue_number, []).append(comment)
        return dict(comment)

    def close_issue(self, issue_number):
        self.issues[issue_number]["state"] = "closed"
        return {"number": issue_number, "state": "closed"}

    def list_issue_comments(self, issue_number):
        return [dict(c) for c in self.issue_comments.get(issue_number, [])]

    def update_comment(self, comment_id, body):
        for comments in self.issue_comments.values():
            for comment in comments:
                if comment["id"] == comment_id:
                    comment["body"] = body
                    return dict(comment)
        raise KeyError(comment_id)

    # pull requests

    def get_pull_request_head_sha(self, pr_number):
        return self.head_sha

    def list_review_comments(self, pr_number):
        return [dict(c) for c in self.review_comments.get(pr_number, [])]

    def create_review_comment(self, pr_number, body, commit_id, path, line):
        comment = {"id": self._id(), "body": body, "commit_id": commit_id, "path": path, "line": line}
        self.review_comments.setdefault(pr_number, []).append(comment)
        return dict(comment)

    # review threads

    def list_review_threads(self, pr_number):
        if self.fail_list_threads:
            raise self.fail_list_threads
        return self.threads

    def reply_to_review_thread(self, thread_id, body):
        if thread_id in self.fail_thread_ops:
            raise RuntimeError(f"GraphQL error: thread {thread_id} locked")
        self.replies.append((thread_id, body))
        return f"https://github.com/o/r/pull/1#reply-{thread_id}"

    def resolve_review_thread(self, thread_id):
        for thread in self.threads:
            if thread["id"] == thread_id:
                thread["isResolved"] = True
                return True
        return False


@pytest.fixture
def fake_github():
    return FakeGitHub()
