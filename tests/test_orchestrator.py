import asyncio

import pytest
from sqlalchemy import select

from prreview.common.errors import ErrorKind, ReviewError, upstream_error
from prreview.common.models import ReviewRecord, ReviewStatus
from prreview.worker.orchestrator import ANALYSIS_ERROR, ReviewOrchestrator
from prreview.worker.tools.comments import CommentPublisher
from prreview.worker.tools.context import ContextRetriever
from prreview.worker.tools.reviewer import ReviewGenerator
from prreview.worker.tools.vector_store import VectorStore

from conftest import FakeLLM, make_pr


def build(sessions, github_app, llm, **kwargs):
    return ReviewOrchestrator(
        ContextRetriever(github_app, llm, VectorStore(sessions)),
        ReviewGenerator(llm),
        CommentPublisher(github_app, sessions, base_delay=0),
        sessions,
        **kwargs
    )


async def records(sessions):
    async with sessions() as s:
        return (await s.execute(select(ReviewRecord).order_by(ReviewRecord.id))).scalars().all()


class SlowGenerator:
    async def generate_review(self, ctx):
        await asyncio.sleep(5)


class TestReviewOrchestrator:
    @pytest.mark.asyncio
    async def test_analyze_stores_and_publishes(self, sessions, github_app, gh, llm):
        gh.files["README.md"] = "# Widgets"
        placeholder = gh.add_comment(7, "in progress")
        pr = make_pr(pending_comment_id=placeholder)

        outcome = await build(sessions, github_app, llm).analyze(pr)

        assert outcome.merge_score == 82
        assert outcome.comment_id == placeholder
        assert not outcome.is_follow_up
        assert "AI Code Review Results" in gh.comments[placeholder]["body"]

        [record] = await records(sessions)
        assert record.status == ReviewStatus.COMPLETED.value
        assert record.summary == "Solid change with one missing error path."
        assert record.comment_id == placeholder
        assert "+    user = db.get(uid)" in record.diff
        assert record.rules_violated == []
        assert record.context_metrics["readme"] is True
        assert record.context_metrics["linked_issues"] == 1
        assert "PROJECT README:\n# Widgets" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_has_completed_review(self, sessions, github_app, gh, llm):
        orchestrator = build(sessions, github_app, llm)
        assert not await orchestrator.has_completed_review("42", "acme/widgets", 7)

        await orchestrator.analyze(make_pr())

        assert await orchestrator.has_completed_review("42", "acme/widgets", 7)
        assert not await orchestrator.has_completed_review("42", "acme/widgets", 8)

    @pytest.mark.asyncio
    async def test_follow_up_uses_latest_completed_review(self, sessions, github_app, gh, llm):
        orchestrator = build(sessions, github_app, llm)
        first = await orchestrator.analyze(make_pr())

        outcome = await orchestrator.follow_up(make_pr())

        assert outcome.is_follow_up
        assert outcome.comment_id != first.comment_id
        assert "Previous Merge Score: 82/100" in llm.prompts[1]
        assert "Solid change with one missing error path." in llm.prompts[1]
        assert [r.is_follow_up for r in await records(sessions)] == [False, True]

    @pytest.mark.asyncio
    async def test_follow_up_without_history_uses_defaults(self, sessions, github_app, gh, llm):
        await build(sessions, github_app, llm).follow_up(make_pr())
        assert "Previous Merge Score: 0/100" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_invalid_model_output_fails_review(self, sessions, github_app, gh):
        placeholder = gh.add_comment(7, "in progress")

        with pytest.raises(ReviewError) as exc:
            await build(sessions, github_app, FakeLLM("not json")).analyze(make_pr(pending_comment_id=placeholder))

        assert exc.value.code == ANALYSIS_ERROR
        assert exc.value.kind == ErrorKind.VALIDATION
        assert exc.value.context["pr_number"] == 7
        assert "PR Review Failed" in gh.comments[placeholder]["body"]
        [record] = await records(sessions)
        assert record.status == ReviewStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_timeout(self, sessions, github_app, gh, llm):
        orchestrator = build(sessions, github_app, llm, timeout=0.05)
        orchestrator.generator = SlowGenerator()

        with pytest.raises(ReviewError) as exc:
            await orchestrator.analyze(make_pr())

        assert exc.value.kind == ErrorKind.TIMEOUT
        [record] = await records(sessions)
        assert record.status == ReviewStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_publish_failure_reports_once(self, sessions, github_app, gh, llm):
        gh.failures["post_issue_comment"] = [upstream_error("forbidden", 403)]

        with pytest.raises(ReviewError) as exc:
            await build(sessions, github_app, llm).analyze(make_pr())

        assert exc.value.kind == ErrorKind.UPSTREAM
        assert len(gh.comments) == 1
        assert "PR Review Failed" in next(iter(gh.comments.values()))["body"]
        [record] = await records(sessions)
        assert record.status == ReviewStatus.FAILED.value
