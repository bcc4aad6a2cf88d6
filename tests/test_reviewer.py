import json

import pytest

from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.schemas import ChunkMatch, FollowUpContext, ReviewContext
from prreview.worker.tools.reviewer import (
    README_LIMIT, ReviewGenerator, build_follow_up_prompt, build_review_prompt,
    parse_response, sanitize, validate
)

from conftest import FakeLLM, make_pr, review_payload


class TestParseResponse:
    def test_fenced_json(self):
        assert parse_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_raw_json(self):
        assert parse_response('  {"a": [1, 2]}  ') == {"a": [1, 2]}

    def test_json_embedded_in_prose(self):
        text = 'Here is my review:\n{"summary": "uses } and { in text", "n": {"x": 1}}\nThanks!'
        assert parse_response(text) == {"summary": "uses } and { in text", "n": {"x": 1}}

    def test_unparsable(self):
        assert parse_response("no json here") is None
        assert parse_response("{broken") is None


class TestSanitize:
    def test_clamps_scores(self):
        out = sanitize(review_payload(merge_score=130.6, confidence=1.7, code_quality={
            "code_style": -5, "test_coverage": 150, "documentation": 50,
            "security": 50, "performance": 50, "maintainability": 50,
        }))
        assert out["merge_score"] == 100
        assert out["confidence"] == 1
        assert out["code_quality"]["code_style"] == 0
        assert out["code_quality"]["test_coverage"] == 100

    def test_rounds_fractional_score(self):
        assert sanitize(review_payload(merge_score=71.6))["merge_score"] == 72

    def test_drops_malformed_suggestions(self):
        out = sanitize(review_payload(suggestions=[
            {"type": "fix", "severity": "HIGH", "description": "Real one", "line_number": 3.0},
            {"type": "fix", "severity": "urgent", "description": "Bad severity"},
            {"type": "refactor", "severity": "low", "description": "Bad type"},
            {"type": "style", "severity": "low"},
            "not a dict",
        ]))
        assert len(out["suggestions"]) == 1
        s = out["suggestions"][0]
        assert s["severity"] == "high"
        assert s["line_number"] == 3
        assert s["file"] is None
        assert s["reasoning"] == ""


class TestValidate:
    def test_valid_review(self):
        review = validate(sanitize(review_payload()))
        assert review.merge_score == 82
        assert review.suggestions[0].file == "app/service.py"

    def test_missing_fields_raise_validation_error(self):
        data = review_payload()
        del data["code_quality"]
        with pytest.raises(ReviewError) as exc:
            validate(sanitize(data))
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_short_summary_is_rejected(self):
        with pytest.raises(ReviewError):
            validate(sanitize(review_payload(summary="ok")))


class TestPrompts:
    def test_review_prompt_includes_context(self):
        ctx = ReviewContext(
            pr=make_pr(),
            readme="R" * (README_LIMIT + 10),
            style_guide="Use tabs",
            chunks=[ChunkMatch(file_path="app/db.py", chunk_index=0, content="def get(): ...", similarity=0.91)],
            findings=[{"rule_id": "secret", "severity": "high", "reason": "Possible secret", "path": "a.py", "line": 4}],
        )
        prompt = build_review_prompt(ctx)

        assert "PR #7: Fix user lookup" in prompt
        assert "(readme truncated)" in prompt
        assert "R" * (README_LIMIT + 1) not in prompt
        assert "PROJECT STYLE GUIDE (STRICTLY ADHERE TO THIS):\nUse tabs" in prompt
        assert "--- CHUNK 1 (Similarity: 0.91) ---\nFile: app/db.py" in prompt
        assert "[secret - high] Possible secret (a.py:4)" in prompt

    def test_follow_up_prompt_includes_previous_review(self):
        ctx = ReviewContext(pr=make_pr())
        prompt = build_follow_up_prompt(ctx, FollowUpContext(
            previous_diff="-old", previous_summary="Needs tests", previous_score=55
        ))

        assert "Previous Merge Score: 55/100" in prompt
        assert "Needs tests" in prompt
        assert "=== PREVIOUS DIFF ===\n-old" in prompt
        assert "+    user = db.get(uid)" in prompt

    def test_follow_up_prompt_without_history(self):
        prompt = build_follow_up_prompt(ReviewContext(pr=make_pr()), FollowUpContext())
        assert "Previous Merge Score: 0/100" in prompt
        assert "(not available)" in prompt


class TestReviewGenerator:
    @pytest.mark.asyncio
    async def test_generate_review(self):
        llm = FakeLLM("```json\n" + json.dumps(review_payload(merge_score=64)) + "\n```")
        review = await ReviewGenerator(llm).generate_review(ReviewContext(pr=make_pr()))

        assert review.merge_score == 64
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_unparsable_response(self):
        with pytest.raises(ReviewError) as exc:
            await ReviewGenerator(FakeLLM("I cannot review this.")).generate_review(ReviewContext(pr=make_pr()))
        assert exc.value.kind == ErrorKind.VALIDATION
