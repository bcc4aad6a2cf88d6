import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.config import SHUTDOWN_TIMEOUT_SECONDS
from prreview.common.db import SessionLocal
from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.models import Delivery
from prreview.common.schemas import PRRecord, WebhookPayload, WorkflowResponse
from prreview.worker.orchestrator import ReviewOrchestrator
from prreview.worker.queue import PR_ANALYSIS, REPOSITORY_INDEXING, JobQueue
from prreview.worker.tools.comments import CommentPublisher
from prreview.worker.tools.context import ContextRetriever
from prreview.worker.tools.extractor import PRExtractor
from prreview.worker.tools.indexer import RepositoryIndexer
from prreview.worker.tools.reviewer import ReviewGenerator
from prreview.worker.tools.vector_store import VectorStore

logger = logging.getLogger(__name__)


class WorkflowGateway:
    """Entry point from webhooks into the review pipeline.

    Decides between initial and follow-up reviews, posts the placeholder
    comment, checks eligibility and enqueues exactly one job per accepted
    webhook. The job handlers it registers run on the queue's workers.
    """

    def __init__(
        self,
        extractor,
        publisher,
        orchestrator,
        queue: JobQueue,
        indexer,
        session_factory: Optional[async_sessionmaker] = None,
    ) -> None:
        self.extractor = extractor
        self.publisher = publisher
        self.orchestrator = orchestrator
        self.queue = queue
        self.indexer = indexer
        self.sessions = session_factory or SessionLocal
        self.initialized = False

    def initialize(self) -> None:
        if self.initialized:
            return
        self.queue.register(PR_ANALYSIS, self._run_analysis)
        self.queue.register(REPOSITORY_INDEXING, self._run_indexing)
        self.queue.on("jobStarted", lambda job: logger.info("Job %s (%s) started", job["id"], job["type"]))
        self.queue.on("jobFailed", lambda job: logger.warning("Job %s (%s) failed: %s", job["id"], job["type"], job["error"]))
        self.initialized = True

    async def _run_analysis(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pr = PRRecord.model_validate(payload["pr"])
        if payload.get("follow_up"):
            outcome = await self.orchestrator.follow_up(pr)
        else:
            outcome = await self.orchestrator.analyze(pr)
        return outcome.model_dump()

    async def _run_indexing(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        summary = await self.indexer.index_repository(payload["tenant_id"], payload["repository"])
        return summary.model_dump()

    async def record_delivery(self, guid: str, event: str, payload: Dict[str, Any]) -> bool:
        """Store a webhook delivery; False if this GUID was seen before."""
        async with self.sessions() as s:
            s.add(Delivery(guid=guid, event=event, payload=payload))
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                logger.info("Ignoring duplicate delivery %s", guid)
                return False
        return True

    async def process_webhook(self, payload: WebhookPayload) -> WorkflowResponse:
        tenant_id = str(payload.installation.id)
        repo = payload.repository.full_name
        pr_number = payload.pull_request.number
        placeholder: Optional[int] = None

        head = payload.pull_request.head.sha
        key = f"{tenant_id}/{repo}#{pr_number}@{head}" if head else None

        try:
            if key:
                existing = await self.queue.find_active(PR_ANALYSIS, key)
                if existing:
                    logger.info("Review of %s#%d at %s is already queued as job %s", repo, pr_number, head, existing)
                    return WorkflowResponse(success=True, job_id=existing, reason="review already queued")

            follow_up = (
                not payload.manual_trigger
                and payload.action == "synchronize"
                and await self.orchestrator.has_completed_review(tenant_id, repo, pr_number)
            )

            if follow_up:
                placeholder = await self.publisher.post_follow_up_in_progress(tenant_id, repo, pr_number)
            else:
                placeholder = await self.publisher.post_in_progress(tenant_id, repo, pr_number)

            try:
                pr = await self.extractor.build_context(payload)
            except ReviewError as e:
                if e.kind != ErrorKind.INELIGIBLE:
                    raise
                await self.publisher.post_error(tenant_id, repo, pr_number, e.message, placeholder)
                return WorkflowResponse(success=True, reason=e.message)

            pr.pending_comment_id = placeholder
            job_id = await self.queue.add(
                PR_ANALYSIS, {"pr": pr.model_dump(mode="json"), "follow_up": follow_up}, key=key
            )
            logger.info(
                "Queued %s review of %s#%d as job %s",
                "follow-up" if follow_up else "initial", repo, pr_number, job_id
            )
            return WorkflowResponse(success=True, job_id=job_id)

        except Exception as e:
            logger.exception("Webhook processing failed for %s#%d", repo, pr_number)
            if placeholder:
                await self.publisher.post_error(
                    tenant_id, repo, pr_number, f"Review could not be started: {e}", placeholder
                )
            return WorkflowResponse(success=False, error=str(e))

    async def process_review_command(self, tenant_id: str, repo: str, pr_number: int) -> WorkflowResponse:
        """Start an initial review requested by a ``review`` comment on the PR."""
        try:
            payload = await self.extractor.fetch_review_request(tenant_id, repo, pr_number)
        except ReviewError as e:
            logger.error("Could not fetch %s#%d for a manual review: %s", repo, pr_number, e)
            return WorkflowResponse(success=False, error=e.message)

        if payload.pull_request.draft and not self.extractor.review_drafts:
            logger.info("Manual review of draft PR %s#%d skipped", repo, pr_number)
            return WorkflowResponse(success=True, reason="Skipping draft PR")

        logger.info("Review comment on %s#%d; starting manual review", repo, pr_number)
        return await self.process_webhook(payload)

    async def request_indexing(self, tenant_id: str, repo: str) -> str:
        """Queue indexing of ``repo``; reuses the job already queued for it."""
        return await self.queue.add(
            REPOSITORY_INDEXING,
            {"tenant_id": tenant_id, "repository": repo},
            key=f"{tenant_id}/{repo}"
        )

    async def index_installed(self, tenant_id: str, repos: List[str]) -> List[str]:
        """Queue indexing for repositories the app was just installed on."""
        job_ids = []
        for repo in repos:
            job_ids.append(await self.request_indexing(tenant_id, repo))
        logger.info("Queued indexing of %d repositories for installation %s", len(repos), tenant_id)
        return job_ids

    async def status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "accepting_jobs": not self.queue.closed,
            "queue": await self.queue.stats(),
        }

    async def health(self) -> Dict[str, Any]:
        database = True
        try:
            async with self.sessions() as s:
                await s.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Database health check failed: %s", e)
            database = False

        healthy = database and self.initialized and not self.queue.closed
        return {
            "status": "healthy" if healthy else "unhealthy",
            "database": database,
            "initialized": self.initialized,
            "accepting_jobs": not self.queue.closed,
            "active_jobs": self.queue.active_count(),
        }

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> int:
        """Stop taking jobs and wait up to ``timeout`` seconds for running ones.

        Returns the number of jobs still running when the wait ended.
        """
        logger.info("Shutting down workflow gateway")
        self.queue.stop()

        deadline = time.monotonic() + timeout
        while self.queue.active_count() and time.monotonic() < deadline:
            await asyncio.sleep(0.5)

        left = self.queue.active_count()
        if left:
            logger.warning("Shutdown timed out with %d job(s) still running", left)
        else:
            logger.info("All jobs finished; shutdown complete")
        return left


def build_gateway(
    github_app,
    llm,
    producer=None,
    session_factory: Optional[async_sessionmaker] = None,
) -> WorkflowGateway:
    """Wire the pipeline services together around one queue."""
    sessions = session_factory or SessionLocal
    store = VectorStore(sessions)
    publisher = CommentPublisher(github_app, sessions)
    orchestrator = ReviewOrchestrator(
        ContextRetriever(github_app, llm, store),
        ReviewGenerator(llm),
        publisher,
        sessions
    )
    gateway = WorkflowGateway(
        PRExtractor(github_app),
        publisher,
        orchestrator,
        JobQueue(producer, sessions),
        RepositoryIndexer(github_app, llm, store, sessions),
        sessions
    )
    gateway.initialize()
    return gateway
