import asyncio
import hmac
import hashlib
import json
import logging
import os
from typing import Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from prreview.api.gateway import WorkflowGateway, build_gateway
from prreview.common.config import (
    ADMIN_TOKEN, EMBEDDED_WORKER, KAFKA_BOOTSTRAP, KAFKA_GROUP_ID, KAFKA_TOPIC_JOBS,
    SHUTDOWN_TIMEOUT_SECONDS, WEBHOOK_SECRET, configure_logging
)
from prreview.common.db import init_db
from prreview.common.errors import ErrorKind, QueueClosedError, ReviewError
from prreview.common.schemas import WebhookPayload, WorkflowResponse
from prreview.worker.github_client import GitHubApp
from prreview.worker.llm import OpenAIProvider

logger = logging.getLogger(__name__)

app = FastAPI(title="PR Review Pipeline")
gateway: Optional[WorkflowGateway] = None
producer: Optional[AIOKafkaProducer] = None
consumer: Optional[AIOKafkaConsumer] = None
consumer_task: Optional[asyncio.Task] = None

REVIEW_ACTIONS = {"opened", "synchronize", "reopened", "ready_for_review"}
REVIEW_COMMAND = "review"
INSTALL_EVENTS = {"installation", "installation_repositories"}

STATUS_BY_KIND = {
    ErrorKind.INELIGIBLE: 200,
    ErrorKind.VALIDATION: 422,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.PERSISTENCE: 500,
}


class IndexRequest(BaseModel):
    tenant_id: str
    repository: str


@app.on_event("startup")
async def startup() -> None:
    """Initialize database, Kafka producer and the review pipeline."""
    global gateway, producer, consumer, consumer_task
    configure_logging()
    await init_db()

    producer = AIOKafkaProducer(
        bootstrap_servers=KAFKA_BOOTSTRAP,
        linger_ms=50
    )
    await producer.start()

    gateway = build_gateway(GitHubApp(), OpenAIProvider(), producer)

    if EMBEDDED_WORKER:
        consumer = AIOKafkaConsumer(
            KAFKA_TOPIC_JOBS,
            bootstrap_servers=KAFKA_BOOTSTRAP,
            group_id=KAFKA_GROUP_ID,
            auto_offset_reset="earliest"
        )
        await consumer.start()
        await gateway.queue.recover()
        consumer_task = asyncio.create_task(gateway.queue.consume(consumer))
        logger.info("Embedded worker consuming %s", KAFKA_TOPIC_JOBS)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Drain running jobs and close Kafka clients."""
    if gateway:
        await gateway.shutdown(SHUTDOWN_TIMEOUT_SECONDS)
    if consumer_task:
        consumer_task.cancel()
    if consumer:
        await consumer.stop()
    if producer:
        await producer.stop()


def get_gateway() -> WorkflowGateway:
    if gateway is None:
        raise HTTPException(503, "Service is starting")
    return gateway


@app.exception_handler(ReviewError)
async def review_error_handler(request: Request, exc: ReviewError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 500),
        content={"success": exc.kind == ErrorKind.INELIGIBLE, "error": exc.to_dict()}
    )


@app.exception_handler(QueueClosedError)
async def queue_closed_handler(request: Request, exc: QueueClosedError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})


def verify_signature(body: bytes, sig: Optional[str]) -> None:
    """Verify GitHub webhook signature."""
    if not sig:
        raise HTTPException(400, "Missing signature")

    mac = hmac.new(
        WEBHOOK_SECRET,
        msg=body,
        digestmod=hashlib.sha256
    ).hexdigest()

    if not hmac.compare_digest(f"sha256={mac}", sig):
        raise HTTPException(401, "Bad signature")


def verify_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not ADMIN_TOKEN:
        raise HTTPException(503, "Admin API is disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(401, "Invalid admin token")


@app.post("/webhook/pr-review")
async def webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: Optional[str] = Header(None),
    gw: WorkflowGateway = Depends(get_gateway)
):
    """Handle GitHub pull_request, issue_comment and installation webhooks."""
    body = await request.body()
    verify_signature(body, x_hub_signature_256)

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(400, "Body is not valid JSON")

    if not await gw.record_delivery(x_github_delivery, x_github_event, payload):
        return {"success": True, "reason": "duplicate delivery"}

    if x_github_event == "issue_comment":
        return await review_command(payload, gw)
    if x_github_event in INSTALL_EVENTS:
        return await installed(x_github_event, payload, gw)

    if x_github_event != "pull_request" or payload.get("action") not in REVIEW_ACTIONS:
        return {"success": True, "reason": f"ignored {x_github_event} event"}

    try:
        parsed = WebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(422, f"Invalid pull_request payload: {e.error_count()} error(s)")

    return workflow_response(await gw.process_webhook(parsed))


def workflow_response(result: WorkflowResponse) -> JSONResponse:
    status = 202 if result.job_id or result.job_ids else 200 if result.success else 500
    return JSONResponse(status_code=status, content=result.model_dump(exclude_none=True))


async def review_command(payload: dict, gw: WorkflowGateway):
    """A PR comment reading exactly ``review`` requests a fresh review."""
    issue = payload.get("issue") or {}
    comment = payload.get("comment") or {}
    if payload.get("action") != "created" or not issue.get("pull_request"):
        return {"success": True, "reason": "ignored issue_comment event"}
    if (comment.get("body") or "").strip().lower() != REVIEW_COMMAND:
        return {"success": True, "reason": "comment is not a review command"}

    try:
        tenant_id = str(payload["installation"]["id"])
        repo = payload["repository"]["full_name"]
        pr_number = int(issue["number"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(422, "Invalid issue_comment payload")

    logger.info(
        "Review requested by %s on %s#%d",
        (comment.get("user") or {}).get("login"), repo, pr_number
    )
    return workflow_response(await gw.process_review_command(tenant_id, repo, pr_number))


async def installed(event: str, payload: dict, gw: WorkflowGateway):
    """Index repositories the app gains access to."""
    action = payload.get("action")
    if (event, action) not in {("installation", "created"), ("installation_repositories", "added")}:
        return {"success": True, "reason": f"ignored {event} event"}

    key = "repositories" if event == "installation" else "repositories_added"
    try:
        tenant_id = str(payload["installation"]["id"])
        repos = [r["full_name"] for r in payload.get(key) or []]
    except (KeyError, TypeError):
        raise HTTPException(422, f"Invalid {event} payload")

    job_ids = await gw.index_installed(tenant_id, repos)
    return workflow_response(WorkflowResponse(success=True, job_ids=job_ids or None))


@app.get("/admin/health", dependencies=[Depends(verify_admin)])
async def admin_health(gw: WorkflowGateway = Depends(get_gateway)) -> dict:
    return await gw.health()


@app.get("/admin/jobs/{job_id}", dependencies=[Depends(verify_admin)])
async def admin_job(job_id: str, gw: WorkflowGateway = Depends(get_gateway)) -> dict:
    job = await gw.queue.get_job(job_id)
    if job is None:
        raise HTTPException(404, f"Job {job_id} not found")
    return job


@app.get("/admin/queue/stats", dependencies=[Depends(verify_admin)])
async def admin_queue_stats(gw: WorkflowGateway = Depends(get_gateway)) -> dict:
    return await gw.queue.stats()


@app.get("/admin/workflow/status", dependencies=[Depends(verify_admin)])
async def admin_workflow_status(gw: WorkflowGateway = Depends(get_gateway)) -> dict:
    return await gw.status()


@app.post("/admin/index", status_code=202, dependencies=[Depends(verify_admin)])
async def admin_index(req: IndexRequest, gw: WorkflowGateway = Depends(get_gateway)) -> dict:
    job_id = await gw.request_indexing(req.tenant_id, req.repository)
    return {"success": True, "job_id": job_id}


def run_server() -> None:
    import uvicorn

    uvicorn.run(
        "prreview.api.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000"))
    )


if __name__ == "__main__":
    run_server()
