import asyncio
import base64
import logging
import time
import requests
import jwt
from typing import List, Dict, Any, Optional, Tuple

from prreview.common.config import (
    GITHUB_API, GITHUB_APP_ID, GITHUB_APP_PRIVATE_KEY_PATH, GITHUB_MAX_ATTEMPTS, GITHUB_RETRY_BASE_DELAY
)
from prreview.common.errors import ErrorKind, ReviewError, upstream_error
from prreview.common.retry import with_backoff

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 50 * 60


def _should_retry(exc: BaseException) -> bool:
    # only errors built from 429/5xx or network failures carry retryable=True
    return isinstance(exc, ReviewError) and exc.retryable


class GitHubApp:
    """GitHub App for authentication and token generation."""

    def __init__(self) -> None:
        self.app_id = GITHUB_APP_ID
        if not self.app_id:
            raise ValueError("GITHUB_APP_ID environment variable is required")

        try:
            with open(GITHUB_APP_PRIVATE_KEY_PATH, "rb") as f:
                self.private_key = f.read()
        except FileNotFoundError:
            raise FileNotFoundError(f"Private key file not found: {GITHUB_APP_PRIVATE_KEY_PATH}")

        self._tokens: Dict[str, Tuple[str, float]] = {}

    def _jwt(self) -> str:
        """Generate JWT token for GitHub App authentication."""
        now = int(time.time())
        return jwt.encode(
            {
                "iat": now - 60,
                "exp": now + 540,
                "iss": self.app_id
            },
            self.private_key,
            algorithm="RS256"
        )

    def installation_token(self, inst_id: str) -> str:
        """Get installation access token, reusing one minted in the last 50 minutes."""
        cached = self._tokens.get(str(inst_id))
        if cached and cached[1] > time.time():
            return cached[0]

        r = requests.post(
            f"{GITHUB_API}/app/installations/{inst_id}/access_tokens",
            headers={
                "Authorization": f"Bearer {self._jwt()}",
                "Accept": "application/vnd.github+json"
            },
            timeout=30
        )
        if r.status_code >= 400:
            raise upstream_error(
                f"Failed to mint installation token for {inst_id}",
                r.status_code, installation_id=inst_id
            )
        token = r.json()["token"]
        self._tokens[str(inst_id)] = (token, time.time() + TOKEN_TTL_SECONDS)
        return token

    async def client(self, inst_id: str, repo: str) -> "GitHubClient":
        """Build a repository client authenticated as the installation."""
        token = await asyncio.to_thread(self.installation_token, inst_id)
        return GitHubClient(token, repo)


class GitHubClient:
    """GitHub API client for repository operations.

    Every public method is a coroutine; the blocking HTTP call runs in a
    worker thread. Rate limits (429), 5xx responses and network errors are
    retried with exponential backoff. Other failures raise ``ReviewError``
    carrying the HTTP status straight away.
    """

    def __init__(
        self,
        token: str,
        repo: str,
        max_attempts: int = GITHUB_MAX_ATTEMPTS,
        base_delay: float = GITHUB_RETRY_BASE_DELAY,
    ) -> None:
        self.repo = repo
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.h = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json"
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            r = requests.request(method, url, headers=self.h, timeout=30, **kwargs)
        except requests.RequestException as e:
            raise ReviewError(
                ErrorKind.UPSTREAM,
                f"GitHub {method} {url} failed: {e}",
                retryable=True,
                context={"repository": self.repo}
            ) from e

        if r.status_code >= 400:
            raise upstream_error(
                f"GitHub {method} {url} returned {r.status_code}",
                r.status_code,
                repository=self.repo,
                body=r.text[:500]
            )
        return r

    async def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{GITHUB_API}{path}"
        return await with_backoff(
            lambda: asyncio.to_thread(self._request, method, url, **kwargs),
            attempts=self.max_attempts,
            base_delay=self.base_delay,
            should_retry=_should_retry,
            label=f"GitHub {method} {path}"
        )

    async def _paginate(self, path: str) -> List[Dict[str, Any]]:
        out, page = [], 1
        while True:
            r = await self._call("GET", path, params={"page": page, "per_page": 100})
            items = r.json()
            out += items

            if len(items) < 100:
                break
            page += 1
        return out

    async def pr_files(self, n: int) -> List[Dict[str, Any]]:
        """Get all files in a pull request."""
        return await self._paginate(f"/repos/{self.repo}/pulls/{n}/files")

    async def get_pull(self, n: int) -> Dict[str, Any]:
        r = await self._call("GET", f"/repos/{self.repo}/pulls/{n}")
        return r.json()

    async def list_issue_comments(self, n: int) -> List[Dict[str, Any]]:
        """List comments on an issue/PR."""
        return await self._paginate(f"/repos/{self.repo}/issues/{n}/comments")

    async def get_issue_comment(self, comment_id: int) -> Dict[str, Any]:
        """Fetch a single comment; raises with status 404 if it was deleted."""
        r = await self._call("GET", f"/repos/{self.repo}/issues/comments/{comment_id}")
        return r.json()

    async def post_issue_comment(self, n: int, body: str) -> int:
        """Post a comment on an issue/PR."""
        r = await self._call(
            "POST", f"/repos/{self.repo}/issues/{n}/comments", json={"body": body}
        )
        return r.json()["id"]

    async def update_issue_comment(self, comment_id: int, body: str) -> None:
        """Update an existing comment."""
        await self._call(
            "PATCH", f"/repos/{self.repo}/issues/comments/{comment_id}", json={"body": body}
        )

    async def default_branch(self) -> str:
        r = await self._call("GET", f"/repos/{self.repo}")
        return r.json().get("default_branch", "main")

    async def list_tree(self, ref: Optional[str] = None) -> List[Dict[str, Any]]:
        """List every blob in the repository tree as ``{path, sha, size}``."""
        ref = ref or await self.default_branch()
        r = await self._call(
            "GET", f"/repos/{self.repo}/git/trees/{ref}", params={"recursive": "1"}
        )
        data = r.json()
        if data.get("truncated"):
            logger.warning("Tree listing for %s was truncated by GitHub", self.repo)
        return [
            {"path": t["path"], "sha": t["sha"], "size": t.get("size", 0)}
            for t in data.get("tree", [])
            if t.get("type") == "blob"
        ]

    async def get_blob(self, sha: str) -> bytes:
        """Raw bytes of a git blob."""
        r = await self._call("GET", f"/repos/{self.repo}/git/blobs/{sha}")
        data = r.json()
        if data.get("encoding") == "base64":
            return base64.b64decode(data.get("content", ""))
        return data.get("content", "").encode()

    async def get_file_text(self, path: str, ref: Optional[str] = None) -> Optional[str]:
        """Text of a file on the default branch, or None if it does not exist."""
        params = {"ref": ref} if ref else None
        try:
            r = await self._call("GET", f"/repos/{self.repo}/contents/{path}", params=params)
        except ReviewError as e:
            if e.status == 404:
                return None
            raise
        data = r.json()
        if isinstance(data, list) or data.get("type") != "file":
            return None
        raw = base64.b64decode(data.get("content", "")) if data.get("encoding") == "base64" else b""
        return raw.decode("utf-8", errors="replace")

    async def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query; GraphQL-level errors are raised as upstream errors."""
        r = await self._call("POST", "/graphql", json={"query": query, "variables": variables})
        payload = r.json()
        if payload.get("errors"):
            raise upstream_error(
                f"GitHub GraphQL error: {payload['errors'][0].get('message', 'unknown')}",
                repository=self.repo
            )
        return payload.get("data", {})
