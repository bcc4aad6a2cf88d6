import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from prreview.common.errors import upstream_error
from prreview.common.models import Base
from prreview.common.schemas import ChangedFile, LinkedIssue, PRRecord


class FakeGitHub:
    """In-memory stand-in for GitHubClient.

    ``failures`` maps a method name to exceptions raised, in order, by the
    next calls of that method.
    """

    def __init__(self) -> None:
        self.comments: Dict[int, Dict[str, Any]] = {}
        self.next_id = 100
        self.pr_file_list: Dict[int, List[Dict[str, Any]]] = {}
        self.pulls: Dict[int, Dict[str, Any]] = {}
        self.issues: Dict[int, Dict[str, Any]] = {}
        self.files: Dict[str, str] = {}
        self.tree: List[Dict[str, Any]] = []
        self.blobs: Dict[str, bytes] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def add_comment(self, pr_number: int, body: str) -> int:
        self.next_id += 1
        self.comments[self.next_id] = {"id": self.next_id, "pr": pr_number, "body": body}
        return self.next_id

    async def pr_files(self, n: int) -> List[Dict[str, Any]]:
        self._call("pr_files")
        return self.pr_file_list.get(n, [])

    async def get_pull(self, n: int) -> Dict[str, Any]:
        self._call("get_pull")
        if n not in self.pulls:
            raise upstream_error("Not Found", 404)
        return dict(self.pulls[n])

    async def list_issue_comments(self, n: int) -> List[Dict[str, Any]]:
        self._call("list_issue_comments")
        return [dict(c) for c in self.comments.values() if c["pr"] == n]

    async def get_issue_comment(self, comment_id: int) -> Dict[str, Any]:
        self._call("get_issue_comment")
        if comment_id not in self.comments:
            raise upstream_error("Not Found", 404)
        return dict(self.comments[comment_id])

    async def post_issue_comment(self, n: int, body: str) -> int:
        self._call("post_issue_comment")
        return self.add_comment(n, body)

    async def update_issue_comment(self, comment_id: int, body: str) -> None:
        self._call("update_issue_comment")
        if comment_id not in self.comments:
            raise upstream_error("Not Found", 404)
        self.comments[comment_id]["body"] = body

    async def list_tree(self, ref: Optional[str] = None) -> List[Dict[str, Any]]:
        self._call("list_tree")
        return list(self.tree)

    async def get_blob(self, sha: str) -> bytes:
        self._call("get_blob")
        return self.blobs[sha]

    async def get_file_text(self, path: str, ref: Optional[str] = None) -> Optional[str]:
        self._call("get_file_text")
        return self.files.get(path)

    async def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self._call("graphql")
        return {"repository": {"issue": self.issues.get(variables["issueNumber"])}}


class FakeGitHubApp:
    def __init__(self, gh: FakeGitHub) -> None:
        self.gh = gh
        self.clients = 0

    async def client(self, inst_id: str, repo: str) -> FakeGitHub:
        self.clients += 1
        return self.gh


class FakeLLM:
    """Deterministic embeddings and canned completions."""

    def __init__(self, response: Optional[str] = None) -> None:
        self.response = response or json.dumps(review_payload())
        self.prompts: List[str] = []
        self.embedded: List[str] = []
        self.embed_failures: Dict[str, int] = {}
        self.vectors: Dict[str, List[float]] = {}

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.response

    async def embed(self, text: str) -> List[float]:
        self.embedded.append(text)
        for needle, left in self.embed_failures.items():
            if needle in text and left > 0:
                self.embed_failures[needle] = left - 1
                raise upstream_error("rate limited", 429)
        for needle, vector in self.vectors.items():
            if needle in text:
                return vector
        return [1.0, 0.0, 0.0]

    @staticmethod
    def estimate_tokens(text: str) -> int:
        return (len(text) + 3) // 4


class FakeProducer:
    def __init__(self) -> None:
        self.sent: List[Any] = []

    async def send_and_wait(self, topic: str, value: bytes) -> None:
        self.sent.append((topic, json.loads(value.decode())))


def review_payload(**overrides: Any) -> Dict[str, Any]:
    data = {
        "merge_score": 82,
        "confidence": 0.8,
        "code_quality": {
            "code_style": 80,
            "test_coverage": 60,
            "documentation": 70,
            "security": 90,
            "performance": 85,
            "maintainability": 75,
        },
        "suggestions": [
            {
                "file": "app/service.py",
                "line_number": 12,
                "type": "fix",
                "severity": "high",
                "description": "Handle the missing user case",
                "reasoning": "get_user returns None for unknown ids",
                "suggested_code": "if user is None:\n    raise NotFound()",
                "language": "python",
            }
        ],
        "summary": "Solid change with one missing error path.",
    }
    data.update(overrides)
    return data


def make_pr(**overrides: Any) -> PRRecord:
    data = {
        "tenant_id": "42",
        "repository": "acme/widgets",
        "pr_number": 7,
        "pr_url": "https://github.com/acme/widgets/pull/7",
        "title": "Fix user lookup",
        "body": "Fixes #3",
        "author": "octocat",
        "linked_issues": [
            LinkedIssue(number=3, url="https://github.com/acme/widgets/issues/3", link_type="fixes", title="Lookup crash")
        ],
        "changed_files": [
            ChangedFile(
                filename="app/service.py",
                status="modified",
                additions=2,
                deletions=1,
                patch="@@ -10,2 +10,3 @@\n def get(uid):\n-    return db[uid]\n+    user = db.get(uid)\n+    return user",
            )
        ],
        "formatted": "PR #7: Fix user lookup",
    }
    data.update(overrides)
    return PRRecord(**data)


def webhook_body(
    action: str = "opened",
    body: str = "Fixes #3",
    draft: bool = False,
    number: int = 7,
    head_sha: str = "",
) -> Dict[str, Any]:
    return {
        "action": action,
        "pull_request": {
            "number": number,
            "title": "Fix user lookup",
            "body": body,
            "html_url": f"https://github.com/acme/widgets/pull/{number}",
            "draft": draft,
            "user": {"login": "octocat"},
            "head": {"sha": head_sha},
        },
        "repository": {"full_name": "acme/widgets"},
        "installation": {"id": 42},
    }


@pytest.fixture
def gh() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def github_app(gh: FakeGitHub) -> FakeGitHubApp:
    return FakeGitHubApp(gh)


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest_asyncio.fixture
async def sessions(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()
