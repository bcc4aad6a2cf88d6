import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.schemas import FollowUpContext, Review, ReviewContext

logger = logging.getLogger(__name__)

README_LIMIT = 3000
METRICS = ("code_style", "test_coverage", "documentation", "security", "performance", "maintainability")
SEVERITIES = {"high", "medium", "low"}
TYPES = {"fix", "improvement", "optimization", "style"}

RESPONSE_FORMAT = """{
  "merge_score": number, // 0-100
  "code_quality": {
    "code_style": number, // 0-100
    "test_coverage": number, // 0-100
    "documentation": number, // 0-100
    "security": number, // 0-100
    "performance": number, // 0-100
    "maintainability": number // 0-100
  },
  "suggestions": [
    {
      "file": string | null,
      "line_number": number | null,
      "type": "improvement" | "fix" | "optimization" | "style",
      "severity": "low" | "medium" | "high",
      "description": string,
      "suggested_code": string | null,
      "language": string | null,
      "reasoning": string
    }
  ],
  "summary": string,
  "confidence": number // 0.0 to 1.0
}"""

_FENCE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```\s*$")


def _context_sections(ctx: ReviewContext) -> str:
    parts = []
    if ctx.readme:
        readme = ctx.readme[:README_LIMIT]
        if len(ctx.readme) > README_LIMIT:
            readme += "\n... (readme truncated)"
        parts.append(f"PROJECT README:\n{readme}")
    if ctx.style_guide:
        parts.append(f"PROJECT STYLE GUIDE (STRICTLY ADHERE TO THIS):\n{ctx.style_guide}")
    if ctx.chunks:
        chunks = "\n\n".join(
            f"--- CHUNK {i} (Similarity: {c.similarity:.2f}) ---\nFile: {c.file_path}\n{c.content}\n--- END CHUNK {i} ---"
            for i, c in enumerate(ctx.chunks, 1)
        )
        parts.append(f"=== RELEVANT CODEBASE CHUNKS ===\n{chunks}")
    if ctx.findings:
        findings = "\n".join(
            f"- [{f['rule_id']} - {f['severity']}] {f['reason']} ({f.get('path')}"
            + (f":{f['line']})" if f.get("line") else ")")
            for f in ctx.findings
        )
        parts.append(f"=== AUTOMATED CHECK FINDINGS ===\n{findings}")
    return "\n\n".join(parts)


def build_review_prompt(ctx: ReviewContext) -> str:
    return f"""You are a Senior Principal Software Engineer and Security Expert reviewing a pull request.
Your goal is to ensure code quality, security, maintainability, and alignment with the project's architecture and style guides.

=== INPUT CONTEXT ===

{ctx.pr.formatted}

{_context_sections(ctx)}

=== INSTRUCTIONS ===
1. Analyze the PR: understand the goal from the description and linked issues.
2. Review the code changes.
3. Apply context:
    - Use the README to understand the project domain.
    - Strictly follow the STYLE GUIDE if provided.
    - Use RELEVANT CODEBASE CHUNKS to detect inconsistencies, redundant implementations or broken imports.
    - Confirm or dismiss the AUTOMATED CHECK FINDINGS.
4. Identify issues, in this priority order:
    - Core: does the PR actually solve the linked issue(s)?
    - Critical: security vulnerabilities, logic bugs, race conditions, broken interfaces.
    - Important: performance bottlenecks, poor error handling, missing tests.
    - Maintainability: unclear code, poor naming, duplication.
    - Style: style guide or idiom violations.

=== OUTPUT REQUIREMENTS ===
- merge_score: 0-100. Below 70 means "Request Changes", above 90 means "Approve". Be rigorous.
- suggestions: actionable, with file paths and line numbers, and suggested_code for fixes and optimizations.
- summary: a very short summary of the review.

=== RESPONSE FORMAT ===
Return ONLY a valid JSON object of this shape, without markdown fences.

{RESPONSE_FORMAT}"""


def build_follow_up_prompt(ctx: ReviewContext, follow_up: FollowUpContext) -> str:
    return f"""You are a Senior Principal Software Engineer and Security Expert performing an incremental follow-up review of a pull request.
New commits have been pushed since the last review. Determine:
1. Whether the author addressed the concerns raised in the previous review.
2. What new issues, if any, the new commits introduced.
3. An updated overall assessment.

Think step by step before answering, but output only the JSON:
Step 1: understand the PR goal from its title, description and linked issues.
Step 2: recall the previous review and its key concerns.
Step 3: analyse the new diff file by file.
Step 4: for each previous concern, decide whether it was fully, partially or not addressed.
Step 5: look for new issues not covered by the previous review.
Step 6: score and summarise.

=== INPUT CONTEXT ===

{ctx.pr.formatted}

{_context_sections(ctx)}

=== PREVIOUS REVIEW ===
Previous Merge Score: {follow_up.previous_score}/100

Previous Review Summary:
{follow_up.previous_summary or "(not available)"}

=== PREVIOUS DIFF ===
{follow_up.previous_diff or "(not available)"}

=== NEW DIFF ===
{ctx.pr.diff_text()}

=== INSTRUCTIONS ===
1. Focus on the NEW DIFF.
2. State whether each concern of the previous review was addressed.
3. Do not repeat issues that were fully fixed; do report issues still present or worsened.
4. Report new issues introduced by the latest commits.

=== OUTPUT REQUIREMENTS ===
- merge_score: updated 0-100 score for the PR after the new push.
- suggestions: only for new code or still-open previous concerns.
- summary: what was fixed since the last review, what remains, what is new.

=== RESPONSE FORMAT ===
Return ONLY a valid JSON object of this shape, without markdown fences.

{RESPONSE_FORMAT}"""


def parse_response(text: str) -> Optional[Dict[str, Any]]:
    """Extract the JSON object from a model response.

    Tries a markdown fence around the whole response, then the raw text,
    then the outermost balanced ``{...}`` block.
    """
    raw = text.strip()

    m = _FENCE.match(raw)
    if m:
        try:
            return json.loads(m.group(1))
        except ValueError:
            pass

    try:
        return json.loads(raw)
    except ValueError:
        pass

    start = raw.find("{")
    if start == -1:
        return None

    depth, in_string, escape = 0, False, False
    for i in range(start, len(raw)):
        ch = raw[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(raw[start:i + 1])
                except ValueError:
                    return None
    return None


def _clamp(value: Any, low: float, high: float) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return max(low, min(high, value))


def _suggestion_ok(s: Any) -> bool:
    if not isinstance(s, dict):
        return False
    if not s.get("description") or not s.get("type") or not s.get("severity"):
        return False
    return str(s["severity"]).lower() in SEVERITIES and str(s["type"]).lower() in TYPES


def sanitize(review: Dict[str, Any]) -> Dict[str, Any]:
    """Clamp numeric fields and drop malformed suggestions before validation."""
    out = dict(review)

    score = _clamp(out.get("merge_score", 0), 0, 100)
    out["merge_score"] = int(round(score)) if isinstance(score, (int, float)) else score
    out["confidence"] = _clamp(out.get("confidence", 0), 0, 1)

    quality = out.get("code_quality")
    if isinstance(quality, dict):
        out["code_quality"] = {k: _clamp(v, 0, 100) for k, v in quality.items()}

    suggestions: List[Dict[str, Any]] = []
    for s in out.get("suggestions") or []:
        if not _suggestion_ok(s):
            logger.warning("Dropping malformed suggestion: %s", s)
            continue
        line = s.get("line_number")
        suggestions.append({
            "file": s.get("file") or None,
            "line_number": int(line) if isinstance(line, (int, float)) and not isinstance(line, bool) else None,
            "severity": str(s["severity"]).lower(),
            "type": str(s["type"]).lower(),
            "description": s["description"],
            "reasoning": s.get("reasoning") or "",
            "suggested_code": s.get("suggested_code") or None,
            "language": s.get("language") or None,
        })
    out["suggestions"] = suggestions
    return out


def validate(review: Dict[str, Any]) -> Review:
    try:
        return Review.model_validate(review)
    except ValidationError as e:
        raise ReviewError(
            ErrorKind.VALIDATION,
            f"AI response validation failed after sanitization: {e.error_count()} error(s)",
            context={"errors": e.errors(include_url=False)}
        ) from e


class ReviewGenerator:
    """Prompts the language model and turns its answer into a Review."""

    def __init__(self, llm) -> None:
        self.llm = llm

    async def generate_review(self, ctx: ReviewContext) -> Review:
        return await self._run(build_review_prompt(ctx))

    async def generate_follow_up_review(self, ctx: ReviewContext, follow_up: FollowUpContext) -> Review:
        logger.info(
            "Building follow-up review prompt for PR #%s in %s",
            ctx.pr.pr_number, ctx.pr.repository
        )
        return await self._run(build_follow_up_prompt(ctx, follow_up))

    async def _run(self, prompt: str) -> Review:
        text = await self.llm.complete(prompt)
        logger.debug("AI response: %s", text)

        parsed = parse_response(text)
        if not isinstance(parsed, dict):
            raise ReviewError(ErrorKind.VALIDATION, "Failed to parse AI response into JSON")
        return validate(sanitize(parsed))
