"""
GitHub API Client — vibe-review

PURPOSE:
    Thin wrapper around the GitHub REST and GraphQL APIs for the operations the
    review engine needs:

    - Issues: list open issues, create, update title/body/labels, comment, close
    - Pull requests: head SHA, summary comment upsert, inline review comments
    - Review threads (GraphQL only): list with resolution/author metadata,
      reply, resolve

    The engine stages never import requests themselves. They receive a
    GitHubAPI instance (or, in tests, an in-memory fake with the same methods),
    which keeps the convergence logic free of network code.

DEPENDS ON:
    - GITHUB_TOKEN with issues:write and pull-requests:write
    - gh_retry.call_with_retry for transient failures

DESIGN DECISIONS:
    - Reads and idempotent writes (PATCH, resolve) are retried on transient
      errors. Creates and replies are not, because a retry after a lost
      response would duplicate them.
    - GraphQL answers HTTP 200 even when the query failed. A non-empty
      "errors" array is raised as GitHubAPIError.
"""

from typing import Optional

import requests

from vibe_review.gh_retry import call_with_retry


API_ROOT = "https://api.github.com"
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30

REVIEW_THREADS_QUERY = """
query($owner:String!, $repo:String!, $pr:Int!, $after:String){
  repository(owner:$owner, name:$repo){
    pullRequest(number:$pr){
      reviewThreads(first:100, after:$after){
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          isResolved
          isOutdated
          comments(first:20){
            nodes { id body url path line originalLine author { login } }
          }
        }
      }
    }
  }
}
"""

REPLY_THREAD_MUTATION = """
mutation($id:ID!, $body:String!){
  addPullRequestReviewThreadReply(input:{pullRequestReviewThreadId:$id, body:$body}) {
    comment { url }
  }
}
"""

RESOLVE_THREAD_MUTATION = """
mutation($id:ID!){
  resolveReviewThread(input:{threadId:$id}) {
    thread { id isResolved }
  }
}
"""


class GitHubAPIError(RuntimeError):
    """GitHub answered, but not with what we asked for."""


class GitHubAPI:
    """
    Thin wrapper around the GitHub API for one repository.

    All methods authenticate with the token passed at construction time.
    """

    def __init__(self, owner: str, repo: str, token: str):
        self.owner = owner
        self.repo = repo
        self.base_url = f"{API_ROOT}/repos/{owner}/{repo}"
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @classmethod
    def from_slug(cls, slug: str, token: str) -> "GitHubAPI":
        """Build a client from 'owner/name'."""
        owner, sep, name = slug.strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError(f"invalid repository slug '{slug}' (expected owner/name)")
        return cls(owner, name, token)

    # -----------------------------------------------------------------------
    # ISSUES
    # -----------------------------------------------------------------------

    def list_open_issues(self) -> list:
        """All open issues of the repository (pull requests excluded)."""
        rows = self._get_paginated(f"{self.base_url}/issues", {"state": "open"})
        return [row for row in rows if not row.get("pull_request")]

    def create_issue(self, title: str, body: str, labels: list) -> dict:
        """Create an issue. Returns {'number', 'url'}."""
        data = {"title": title, "body": body}
        if labels:
            data["labels"] = list(labels)
        created = self._request("POST", f"{self.base_url}/issues", json=data, idempotent=False)
        return {"number": created.get("number"), "url": created.get("html_url")}

    def update_issue(self, issue_number: int, title: str, body: str, labels: list) -> None:
        """Replace the title/body of an issue and add labels."""
        self._request("PATCH", f"{self.base_url}/issues/{issue_number}", json={"title": title, "body": body})
        if labels:
            self._request(
                "POST", f"{self.base_url}/issues/{issue_number}/labels", json={"labels": list(labels)}
            )

    def post_comment(self, issue_number: int, body: str) -> dict:
        """Post a comment on an issue or pull request."""
        return self._request(
            "POST", f"{self.base_url}/issues/{issue_number}/comments", json={"body": body}, idempotent=False
        )

    def close_issue(self, issue_number: int) -> dict:
        """Close an issue."""
        return self._request("PATCH", f"{self.base_url}/issues/{issue_number}", json={"state": "closed"})

    def list_issue_comments(self, issue_number: int) -> list:
        return self._get_paginated(f"{self.base_url}/issues/{issue_number}/comments")

    def update_comment(self, comment_id: int, body: str) -> dict:
        return self._request("PATCH", f"{self.base_url}/issues/comments/{comment_id}", json={"body": body})

    # -----------------------------------------------------------------------
    # PULL REQUESTS
    # -----------------------------------------------------------------------

    def get_pull_request_head_sha(self, pr_number: int) -> Optional[str]:
        pr = self._request("GET", f"{self.base_url}/pulls/{pr_number}")
        return (pr.get("head") or {}).get("sha")

    def list_review_comments(self, pr_number: int) -> list:
        """Inline (diff) comments of a pull request."""
        return self._get_paginated(f"{self.base_url}/pulls/{pr_number}/comments")

    def create_review_comment(self, pr_number: int, body: str, commit_id: str, path: str, line: int) -> dict:
        """Post an inline comment on the given file line of the PR head."""
        data = {"body": body, "commit_id": commit_id, "path": path, "line": line, "side": "RIGHT"}
        return self._request("POST", f"{self.base_url}/pulls/{pr_number}/comments", json=data, idempotent=False)

    # -----------------------------------------------------------------------
    # REVIEW THREADS (GraphQL)
    # -----------------------------------------------------------------------

    def list_review_threads(self, pr_number: int) -> list:
        """
        All review threads of a PR as raw GraphQL nodes.

        Each node has id, isResolved, isOutdated and comments.nodes with
        id, body, url, path, line, originalLine and author.login.
        """
        threads = []
        cursor = None
        while True:
            variables = {"owner": self.owner, "repo": self.repo, "pr": pr_number, "after": cursor}
            data = self._graphql(REVIEW_THREADS_QUERY, variables)
            pull_request = (data.get("repository") or {}).get("pullRequest")
            if pull_request is None:
                raise GitHubAPIError(f"review threads: PR #{pr_number} not found")

            review_threads = pull_request.get("reviewThreads") or {}
            threads.extend(review_threads.get("nodes") or [])

            page_info = review_threads.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                break
        return threads

    def reply_to_review_thread(self, thread_id: str, body: str) -> Optional[str]:
        """Reply to a review thread. Returns the reply URL."""
        data = self._graphql(REPLY_THREAD_MUTATION, {"id": thread_id, "body": body}, idempotent=False)
        reply = data.get("addPullRequestReviewThreadReply") or {}
        return (reply.get("comment") or {}).get("url")

    def resolve_review_thread(self, thread_id: str) -> bool:
        """Resolve a review thread. Returns GitHub's reported isResolved."""
        data = self._graphql(RESOLVE_THREAD_MUTATION, {"id": thread_id})
        resolved = data.get("resolveReviewThread") or {}
        return bool((resolved.get("thread") or {}).get("isResolved"))

    # -----------------------------------------------------------------------
    # TRANSPORT
    # -----------------------------------------------------------------------

    def _request(self, method: str, url: str, idempotent: bool = True, **kwargs):
        def send():
            resp = requests.request(method, url, headers=self.headers, timeout=REQUEST_TIMEOUT, **kwargs)
            resp.raise_for_status()
            if resp.status_code == 204 or not resp.content:
                return {}
            return resp.json()

        return call_with_retry(send, idempotent=idempotent, context=f"{method} {url}")

    def _get_paginated(self, url: str, params: Optional[dict] = None) -> list:
        rows = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": PAGE_SIZE, "page": page})
            batch = self._request("GET", url, params=query)
            if not isinstance(batch, list):
                raise GitHubAPIError(f"GET {url}: expected array response")
            rows.extend(row for row in batch if isinstance(row, dict))
            if len(batch) < PAGE_SIZE:
                return rows
            page += 1

    def _graphql(self, query: str, variables: dict, idempotent: bool = True) -> dict:
        payload = self._request(
            "POST", f"{API_ROOT}/graphql", json={"query": query, "variables": variables}, idempotent=idempotent
        )
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise GitHubAPIError(f"GraphQL error: {messages}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise GitHubAPIError("GraphQL response without data")
        return data
