import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from prreview.api import app as app_module
from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.schemas import WorkflowResponse

from conftest import webhook_body

SECRET = b"webhook-secret"


class StubQueue:
    def __init__(self):
        self.jobs = {"job-1": {"id": "job-1", "status": "completed"}}

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def stats(self):
        return {"total": 1, "pending": 0, "depth": 0, "active": 0}


class StubGateway:
    def __init__(self):
        self.queue = StubQueue()
        self.deliveries = set()
        self.processed = []
        self.commands = []
        self.installed = []
        self.indexing_error = None

    async def record_delivery(self, guid, event, payload):
        if guid in self.deliveries:
            return False
        self.deliveries.add(guid)
        return True

    async def process_webhook(self, payload):
        self.processed.append(payload)
        return WorkflowResponse(success=True, job_id="job-1")

    async def process_review_command(self, tenant_id, repo, pr_number):
        self.commands.append((tenant_id, repo, pr_number))
        return WorkflowResponse(success=True, job_id="job-3")

    async def index_installed(self, tenant_id, repos):
        self.installed.append((tenant_id, repos))
        return [f"index-{r}" for r in repos]

    async def request_indexing(self, tenant_id, repo):
        if self.indexing_error:
            raise self.indexing_error
        return "job-2"

    async def health(self):
        return {"status": "healthy"}

    async def status(self):
        return {"initialized": True}


@pytest.fixture
def stub(monkeypatch):
    monkeypatch.setattr(app_module, "WEBHOOK_SECRET", SECRET)
    monkeypatch.setattr(app_module, "ADMIN_TOKEN", "admin")
    gateway = StubGateway()
    app_module.app.dependency_overrides[app_module.get_gateway] = lambda: gateway
    yield gateway
    app_module.app.dependency_overrides.clear()


@pytest.fixture
def client(stub):
    return TestClient(app_module.app)


def post_webhook(client, body, event="pull_request", delivery="d-1", secret=SECRET):
    raw = json.dumps(body).encode()
    sig = "sha256=" + hmac.new(secret, raw, hashlib.sha256).hexdigest()
    return client.post(
        "/webhook/pr-review",
        content=raw,
        headers={
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": delivery,
            "X-Hub-Signature-256": sig,
            "Content-Type": "application/json",
        },
    )


class TestWebhook:
    def test_accepted_pull_request(self, client, stub):
        res = post_webhook(client, webhook_body())

        assert res.status_code == 202
        assert res.json() == {"success": True, "job_id": "job-1"}
        assert stub.processed[0].pull_request.number == 7

    def test_bad_signature(self, client, stub):
        res = post_webhook(client, webhook_body(), secret=b"wrong")
        assert res.status_code == 401
        assert stub.processed == []

    def test_missing_signature(self, client):
        res = client.post(
            "/webhook/pr-review",
            content=b"{}",
            headers={"X-GitHub-Event": "pull_request", "X-GitHub-Delivery": "d-1"},
        )
        assert res.status_code == 400

    def test_duplicate_delivery_is_ignored(self, client, stub):
        post_webhook(client, webhook_body())
        res = post_webhook(client, webhook_body())

        assert res.status_code == 200
        assert res.json()["reason"] == "duplicate delivery"
        assert len(stub.processed) == 1

    def test_other_events_and_actions_are_ignored(self, client, stub):
        assert post_webhook(client, {"zen": "hi"}, event="ping", delivery="d-2").status_code == 200
        assert post_webhook(client, webhook_body(action="closed"), delivery="d-3").status_code == 200
        assert stub.processed == []

    def test_malformed_pull_request_payload(self, client, stub):
        res = post_webhook(client, {"action": "opened", "pull_request": {}}, delivery="d-4")
        assert res.status_code == 422

    def test_review_comment_on_pull_request(self, client, stub):
        body = {
            "action": "created",
            "issue": {"number": 7, "pull_request": {"url": "https://api.github.com/repos/acme/widgets/pulls/7"}},
            "comment": {"body": "  Review \n", "user": {"login": "octocat"}},
            "repository": {"full_name": "acme/widgets"},
            "installation": {"id": 42},
        }
        res = post_webhook(client, body, event="issue_comment", delivery="d-5")

        assert res.status_code == 202
        assert res.json() == {"success": True, "job_id": "job-3"}
        assert stub.commands == [("42", "acme/widgets", 7)]

    def test_other_comments_are_ignored(self, client, stub):
        on_issue = {
            "action": "created",
            "issue": {"number": 3},
            "comment": {"body": "review"},
            "repository": {"full_name": "acme/widgets"},
            "installation": {"id": 42},
        }
        chatter = dict(on_issue, issue={"number": 7, "pull_request": {"url": "x"}}, comment={"body": "please review"})

        assert post_webhook(client, on_issue, event="issue_comment", delivery="d-6").status_code == 200
        assert post_webhook(client, chatter, event="issue_comment", delivery="d-7").status_code == 200
        assert stub.commands == []

    def test_installation_queues_indexing(self, client, stub):
        created = {
            "action": "created",
            "installation": {"id": 42},
            "repositories": [{"full_name": "acme/widgets"}],
        }
        added = {
            "action": "added",
            "installation": {"id": 42},
            "repositories_added": [{"full_name": "acme/gadgets"}],
        }

        res = post_webhook(client, created, event="installation", delivery="d-8")
        assert res.status_code == 202
        assert res.json()["job_ids"] == ["index-acme/widgets"]

        assert post_webhook(client, added, event="installation_repositories", delivery="d-9").status_code == 202
        assert stub.installed == [("42", ["acme/widgets"]), ("42", ["acme/gadgets"])]

    def test_installation_removal_is_ignored(self, client, stub):
        body = {"action": "deleted", "installation": {"id": 42}, "repositories": [{"full_name": "acme/widgets"}]}
        res = post_webhook(client, body, event="installation", delivery="d-10")

        assert res.status_code == 200
        assert stub.installed == []


class TestAdmin:
    def test_requires_token(self, client):
        assert client.get("/admin/health").status_code == 401
        assert client.get("/admin/health", headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_health_and_stats(self, client):
        headers = {"X-Admin-Token": "admin"}
        assert client.get("/admin/health", headers=headers).json() == {"status": "healthy"}
        assert client.get("/admin/queue/stats", headers=headers).json()["total"] == 1
        assert client.get("/admin/workflow/status", headers=headers).json() == {"initialized": True}

    def test_job_lookup(self, client):
        headers = {"X-Admin-Token": "admin"}
        assert client.get("/admin/jobs/job-1", headers=headers).json()["status"] == "completed"
        assert client.get("/admin/jobs/missing", headers=headers).status_code == 404

    def test_request_indexing(self, client):
        res = client.post(
            "/admin/index",
            json={"tenant_id": "42", "repository": "acme/widgets"},
            headers={"X-Admin-Token": "admin"},
        )
        assert res.status_code == 202
        assert res.json() == {"success": True, "job_id": "job-2"}

    def test_review_errors_map_to_status_codes(self, client, stub):
        stub.indexing_error = ReviewError(ErrorKind.UPSTREAM, "GitHub down", status=503)
        res = client.post(
            "/admin/index",
            json={"tenant_id": "42", "repository": "acme/widgets"},
            headers={"X-Admin-Token": "admin"},
        )
        assert res.status_code == 502
        assert res.json()["error"]["kind"] == "upstream"
