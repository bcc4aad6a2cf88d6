import asyncio
import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.config import REVIEW_TIMEOUT_SECONDS
from prreview.common.db import SessionLocal
from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.models import ReviewRecord, ReviewStatus
from prreview.common.schemas import (
    FollowUpContext, PRRecord, Review, ReviewContext, ReviewOutcome, ReviewResult
)
from prreview.worker.tools import rules as rules_tool

logger = logging.getLogger(__name__)

ANALYSIS_ERROR = "PR_ANALYSIS_ERROR"


class ReviewOrchestrator:
    """Runs one review cycle of a pull request from record to comment.

    Every cycle, initial or follow-up, gets its own ReviewRecord, so the
    table keeps the full review history of a PR.
    """

    def __init__(
        self,
        retriever,
        generator,
        publisher,
        session_factory: Optional[async_sessionmaker] = None,
        timeout: float = REVIEW_TIMEOUT_SECONDS,
    ) -> None:
        self.retriever = retriever
        self.generator = generator
        self.publisher = publisher
        self.sessions = session_factory or SessionLocal
        self.timeout = timeout

    async def analyze(self, pr: PRRecord) -> ReviewOutcome:
        return await self._run(pr, follow_up=False)

    async def follow_up(self, pr: PRRecord) -> ReviewOutcome:
        return await self._run(pr, follow_up=True)

    async def has_completed_review(self, tenant_id: str, repo: str, pr_number: int) -> bool:
        try:
            return await self._latest_completed(tenant_id, repo, pr_number) is not None
        except Exception as e:
            logger.error("Failed to check existing review status for %s#%d: %s", repo, pr_number, e)
            return False

    async def _latest_completed(self, tenant_id: str, repo: str, pr_number: int) -> Optional[ReviewRecord]:
        async with self.sessions() as s:
            return (await s.execute(
                select(ReviewRecord)
                .where(
                    ReviewRecord.tenant_id == tenant_id,
                    ReviewRecord.repository == repo,
                    ReviewRecord.pr_number == pr_number,
                    ReviewRecord.status == ReviewStatus.COMPLETED.value
                )
                .order_by(ReviewRecord.created_at.desc(), ReviewRecord.id.desc())
                .limit(1)
            )).scalar_one_or_none()

    async def _create_record(self, pr: PRRecord, follow_up: bool) -> int:
        try:
            async with self.sessions() as s:
                record = ReviewRecord(
                    tenant_id=pr.tenant_id,
                    repository=pr.repository,
                    pr_number=pr.pr_number,
                    pr_url=pr.pr_url,
                    comment_id=pr.pending_comment_id,
                    status=ReviewStatus.IN_PROGRESS.value,
                    is_follow_up=follow_up,
                    merge_score=0,
                    rules_violated=[],
                    rules_passed=[],
                    suggestions=[]
                )
                s.add(record)
                await s.commit()
                return record.id
        except Exception as e:
            raise ReviewError(
                ErrorKind.PERSISTENCE,
                f"Failed to create review record: {e}",
                context={"pr_number": pr.pr_number, "repository": pr.repository}
            ) from e

    async def _store(self, record_id: int, pr: PRRecord, review: Review, ctx: ReviewContext, elapsed_ms: int) -> ReviewRecord:
        violated, passed = rules_tool.partition(ctx.findings)
        try:
            async with self.sessions() as s:
                record = await s.get(ReviewRecord, record_id)
                record.status = ReviewStatus.COMPLETED.value
                record.merge_score = review.merge_score
                record.confidence = review.confidence
                record.code_quality = review.code_quality.model_dump()
                record.suggestions = [x.model_dump() for x in review.suggestions]
                record.summary = review.summary
                record.diff = pr.diff_text()
                record.rules_violated = violated
                record.rules_passed = passed
                record.context_metrics = {
                    "chunks": len(ctx.chunks),
                    "style_guide": ctx.style_guide is not None,
                    "readme": ctx.readme is not None,
                    "linked_issues": len(pr.linked_issues),
                    "changed_files": len(pr.changed_files),
                }
                record.processing_ms = elapsed_ms
                await s.commit()
                return record
        except Exception as e:
            raise ReviewError(
                ErrorKind.PERSISTENCE,
                f"Failed to store review result: {e}",
                context={"record_id": record_id}
            ) from e

    async def _mark_failed(self, record_id: int) -> None:
        try:
            async with self.sessions() as s:
                record = await s.get(ReviewRecord, record_id)
                if record is not None:
                    record.status = ReviewStatus.FAILED.value
                    await s.commit()
        except Exception as e:
            logger.error("Failed to mark review %s as failed: %s", record_id, e)

    async def _generate(self, pr: PRRecord, previous: Optional[FollowUpContext]):
        findings = rules_tool.analyze(pr.changed_files)
        ctx = await self.retriever.build(pr, findings)
        if previous is None:
            review = await self.generator.generate_review(ctx)
        else:
            review = await self.generator.generate_follow_up_review(ctx, previous)
        return ctx, review

    async def _run(self, pr: PRRecord, follow_up: bool) -> ReviewOutcome:
        started = time.monotonic()
        kind = "follow-up" if follow_up else "initial"
        logger.info("Starting %s review for PR #%d in %s", kind, pr.pr_number, pr.repository)
        record_id: Optional[int] = None

        try:
            previous = None
            if follow_up:
                prior = await self._latest_completed(pr.tenant_id, pr.repository, pr.pr_number)
                previous = FollowUpContext(
                    previous_diff=(prior.diff or "") if prior else "",
                    previous_summary=(prior.summary or "") if prior else "",
                    previous_score=prior.merge_score if prior else 0
                )

            record_id = await self._create_record(pr, follow_up)

            try:
                ctx, review = await asyncio.wait_for(self._generate(pr, previous), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ReviewError(
                    ErrorKind.TIMEOUT,
                    f"Review of PR #{pr.pr_number} timed out after {self.timeout:.0f}s"
                ) from e

            elapsed_ms = int((time.monotonic() - started) * 1000)
            record = await self._store(record_id, pr, review, ctx, elapsed_ms)

            result = ReviewResult(
                record_id=record_id,
                tenant_id=pr.tenant_id,
                repository=pr.repository,
                pr_number=pr.pr_number,
                review=review,
                processing_ms=elapsed_ms,
                created_at=record.created_at,
                is_follow_up=follow_up,
                previous_summary=previous.previous_summary if previous else None
            )
            published = await (self.publisher.post_follow_up(result) if follow_up else self.publisher.post_or_update(result))
            if not published.success:
                raise ReviewError(
                    ErrorKind.UPSTREAM,
                    f"Review completed but the comment could not be posted: {published.error}",
                    context={"notified": True}
                )

            logger.info(
                "%s review completed for PR #%d in %s: score=%d suggestions=%d in %dms",
                kind.capitalize(), pr.pr_number, pr.repository, review.merge_score,
                len(review.suggestions), elapsed_ms
            )
            return ReviewOutcome(
                record_id=record_id,
                pr_number=pr.pr_number,
                repository=pr.repository,
                merge_score=review.merge_score,
                comment_id=published.comment_id,
                is_follow_up=follow_up,
                processing_ms=elapsed_ms
            )

        except Exception as e:
            logger.error(
                "%s review failed for PR #%d in %s after %dms: %s",
                kind.capitalize(), pr.pr_number, pr.repository,
                int((time.monotonic() - started) * 1000), e
            )
            if record_id is not None:
                await self._mark_failed(record_id)

            notified = isinstance(e, ReviewError) and e.context.get("notified")
            if not notified:
                await self.publisher.post_error(
                    pr.tenant_id, pr.repository, pr.pr_number,
                    f"Review failed: {e}. Please review manually.",
                    pr.pending_comment_id
                )

            raise ReviewError(
                e.kind if isinstance(e, ReviewError) else ErrorKind.UPSTREAM,
                f"Failed to complete {kind} review of PR #{pr.pr_number}: {e}",
                code=ANALYSIS_ERROR,
                status=e.status if isinstance(e, ReviewError) else None,
                context={"pr_number": pr.pr_number, "repository": pr.repository, "cause": str(e)}
            ) from e
