import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.config import COMMENT_MAX_ATTEMPTS
from prreview.common.db import SessionLocal
from prreview.common.errors import ReviewError
from prreview.common.models import ReviewRecord
from prreview.common.retry import with_backoff
from prreview.common.schemas import ReviewResult
from prreview.worker.tools.formatter import (
    format_error, format_follow_up_in_progress, format_in_progress, format_review, parse_marker
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (403, 404)


def should_retry(exc: BaseException) -> bool:
    """Everything but permission and not-found errors is worth another try."""
    return not (isinstance(exc, ReviewError) and exc.status in TERMINAL_STATUSES)


class PublishResult(BaseModel):
    success: bool
    comment_id: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    fallback_comment_id: Optional[int] = None


class CommentPublisher:
    """Keeps exactly one review comment per PR review on GitHub.

    Comments carry a hidden marker with tenant, PR number and timestamp so
    an existing review comment can be found again and updated in place.
    """

    def __init__(
        self,
        github_app,
        session_factory: Optional[async_sessionmaker] = None,
        max_attempts: int = COMMENT_MAX_ATTEMPTS,
        base_delay: float = 1.0,
    ) -> None:
        self.github_app = github_app
        self.sessions = session_factory or SessionLocal
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def post_or_update(self, result: ReviewResult) -> PublishResult:
        """Publish an initial review, updating the PR's existing review comment if any."""
        return await self._publish(result, scan=True)

    async def post_follow_up(self, result: ReviewResult) -> PublishResult:
        """Publish a follow-up review.

        Only the comment stored on this record is updated; earlier review
        comments on the PR are left untouched.
        """
        return await self._publish(result, scan=False)

    async def _publish(self, result: ReviewResult, scan: bool) -> PublishResult:
        body = format_review(result)
        attempts = 0

        async def attempt() -> int:
            nonlocal attempts
            attempts += 1
            gh = await self.github_app.client(result.tenant_id, result.repository)
            existing = await self._find_existing(gh, result, scan)
            if existing:
                await gh.update_issue_comment(existing, body)
                logger.info("Updated review comment %s on %s#%d", existing, result.repository, result.pr_number)
                return existing
            new_id = await gh.post_issue_comment(result.pr_number, body)
            logger.info("Posted review comment %s on %s#%d", new_id, result.repository, result.pr_number)
            return new_id

        try:
            comment_id = await with_backoff(
                attempt,
                attempts=self.max_attempts,
                base_delay=self.base_delay,
                should_retry=should_retry,
                label=f"publish review for {result.repository}#{result.pr_number}"
            )
        except Exception as e:
            logger.error(
                "Failed to publish review for %s#%d after %d attempt(s): %s",
                result.repository, result.pr_number, attempts, e
            )
            try:
                placeholder = await self._stored_comment_id(result.record_id)
            except Exception as lookup_error:
                logger.warning("Could not read stored comment of review %s: %s", result.record_id, lookup_error)
                placeholder = None
            fallback = await self.post_error(
                result.tenant_id, result.repository, result.pr_number,
                f"Failed to post review results: {e}",
                placeholder
            )
            return PublishResult(success=False, attempts=attempts, error=str(e), fallback_comment_id=fallback)

        await self._persist_comment_id(result.record_id, comment_id)
        return PublishResult(success=True, comment_id=comment_id, attempts=attempts)

    async def _find_existing(self, gh, result: ReviewResult, scan: bool) -> Optional[int]:
        stored = await self._stored_comment_id(result.record_id)
        if stored:
            try:
                await gh.get_issue_comment(stored)
                return stored
            except ReviewError as e:
                if e.status != 404:
                    raise
                logger.info("Stored comment %s no longer exists", stored)

        if not scan:
            return None

        for c in await gh.list_issue_comments(result.pr_number):
            marker = parse_marker(c.get("body") or "")
            if marker and marker["tenant_id"] == result.tenant_id and marker["pr_number"] == result.pr_number:
                return c["id"]
        return None

    async def _stored_comment_id(self, record_id: int) -> Optional[int]:
        async with self.sessions() as s:
            return (await s.execute(
                select(ReviewRecord.comment_id).where(ReviewRecord.id == record_id)
            )).scalar_one_or_none()

    async def _persist_comment_id(self, record_id: int, comment_id: int) -> None:
        try:
            async with self.sessions() as s:
                await s.execute(
                    update(ReviewRecord).where(ReviewRecord.id == record_id).values(comment_id=comment_id)
                )
                await s.commit()
        except Exception as e:
            logger.error("Could not store comment id %s on review %s: %s", comment_id, record_id, e)

    async def post_in_progress(self, tenant_id: str, repo: str, pr_number: int) -> Optional[int]:
        """Placeholder comment for an initial review; None if it could not be posted."""
        return await self._post_placeholder(tenant_id, repo, pr_number, format_in_progress(tenant_id, pr_number))

    async def post_follow_up_in_progress(self, tenant_id: str, repo: str, pr_number: int) -> Optional[int]:
        return await self._post_placeholder(
            tenant_id, repo, pr_number, format_follow_up_in_progress(tenant_id, pr_number)
        )

    async def _post_placeholder(self, tenant_id: str, repo: str, pr_number: int, body: str) -> Optional[int]:
        try:
            gh = await self.github_app.client(tenant_id, repo)
            return await gh.post_issue_comment(pr_number, body)
        except Exception as e:
            logger.warning("Could not post in-progress comment on %s#%d: %s", repo, pr_number, e)
            return None

    async def post_error(
        self,
        tenant_id: str,
        repo: str,
        pr_number: int,
        message: str,
        comment_id: Optional[int] = None,
    ) -> Optional[int]:
        """Explain a failure on the PR, replacing the placeholder when one is given.

        Returns the comment id, or None when GitHub could not be reached.
        """
        body = format_error(tenant_id, pr_number, message)
        try:
            gh = await self.github_app.client(tenant_id, repo)
            if comment_id:
                try:
                    await gh.update_issue_comment(comment_id, body)
                    return comment_id
                except ReviewError as e:
                    if e.status != 404:
                        raise
            return await gh.post_issue_comment(pr_number, body)
        except Exception as e:
            logger.error("Could not post error comment on %s#%d: %s", repo, pr_number, e)
            return None
