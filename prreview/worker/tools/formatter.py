import re
from datetime import datetime, timezone
from typing import Dict, List, Optional

from prreview.common.schemas import ReviewResult, Suggestion

MARKER_RE = re.compile(r"<!-- AI-REVIEW-MARKER:([^:\s]+):(\d+):(\S+) -->")

SEVERITY_EMOJI = {"high": "🔴", "medium": "🟡", "low": "🔵"}
TYPE_EMOJI = {"fix": "🔧", "improvement": "✨", "optimization": "⚡", "style": "🎨"}

FOOTER_NOTE = (
    "> 🤖 This review was generated by AI. While we strive for accuracy, "
    "please use your judgment when applying suggestions."
)


def _timestamp(when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_marker(tenant_id: str, pr_number: int, when: Optional[datetime] = None) -> str:
    return f"<!-- AI-REVIEW-MARKER:{tenant_id}:{pr_number}:{_timestamp(when)} -->"


def parse_marker(body: str) -> Optional[Dict[str, object]]:
    """Tenant, PR number and timestamp of the first marker in ``body``."""
    m = MARKER_RE.search(body or "")
    if not m:
        return None
    return {"tenant_id": m.group(1), "pr_number": int(m.group(2)), "timestamp": m.group(3)}


def score_emoji(score: int) -> str:
    if score >= 85:
        return "🟢"
    if score >= 70:
        return "🟡"
    if score >= 50:
        return "🟠"
    return "🔴"


def score_status(score: int) -> str:
    if score >= 85:
        return "Ready to Merge"
    if score >= 70:
        return "Review Recommended"
    if score >= 50:
        return "Changes Needed"
    return "Major Issues Found"


def recommendation(score: int) -> str:
    if score >= 85:
        return "✅ This PR looks great and is ready for merge!"
    if score >= 70:
        return "⚠️ This PR is mostly good but could benefit from some improvements before merging."
    if score >= 50:
        return "❌ This PR needs significant improvements before it should be merged."
    return "🚫 This PR has major issues that must be addressed before merging."


def score_bar(score: int, length: int = 20) -> str:
    filled = round(score / 100 * length)
    color = "🟢" if score >= 85 else "🟡" if score >= 70 else "🔴"
    return f"{color} `{'█' * filled}{'░' * (length - filled)}` {score}%"


def suggestions_section(suggestions: List[Suggestion]) -> str:
    if not suggestions:
        return "### 💡 Code Suggestions\n\n✨ Great job! No specific suggestions at this time."

    out = [f"### 💡 Code Suggestions ({len(suggestions)})"]
    for severity in ("high", "medium", "low"):
        group = [s for s in suggestions if s.severity == severity]
        if not group:
            continue
        out.append(f"#### {SEVERITY_EMOJI[severity]} {severity.capitalize()} Priority ({len(group)})")
        for i, s in enumerate(group, 1):
            if s.file:
                label = f"**{s.file}**" + (f" (Line {s.line_number})" if s.line_number else "")
            else:
                label = "**General**"
            item = (
                f"{i}. {label}\n"
                f"{TYPE_EMOJI.get(s.type, '💡')} {s.description}\n\n"
                f"💭 **Reasoning:** {s.reasoning}"
            )
            if s.suggested_code:
                item += f"\n\n**Suggested Code:**\n```{s.language or ''}\n{s.suggested_code}\n```"
            out.append(item)
    return "\n\n".join(out)


def _footer(result: ReviewResult) -> str:
    seconds = f"{round(result.processing_ms / 1000)}s" if result.processing_ms else "N/A"
    review_type = "\n- **Review Type:** Follow-Up (triggered by new push)" if result.is_follow_up else ""
    return (
        "<details>\n<summary>📊 Review Metadata</summary>\n\n"
        f"- **Processing Time:** {seconds}\n"
        f"- **Analysis Date:** {_timestamp(result.created_at)}"
        f"{review_type}\n\n"
        "</details>\n\n"
        f"{FOOTER_NOTE}\n\n"
        f"{build_marker(result.tenant_id, result.pr_number, result.created_at)}"
    )


def format_review(result: ReviewResult) -> str:
    r = result.review
    emoji = score_emoji(r.merge_score)

    if result.is_follow_up:
        title = "## 🔄 Follow-Up AI Code Review"
        score_title = f"### {emoji} Updated Merge Score: {r.merge_score}/100"
    else:
        title = f"## {emoji} AI Code Review Results"
        score_title = f"### {emoji} Merge Score: {r.merge_score}/100"

    header = (
        f"{title}\n\n"
        f"**Status:** {score_status(r.merge_score)}  \n"
        f"**Confidence:** {round(r.confidence * 100)}%\n\n---"
    )

    previous = ""
    if result.is_follow_up and result.previous_summary:
        previous = (
            "<details>\n<summary>📋 Previous Review Summary</summary>\n\n"
            f"{result.previous_summary}\n\n</details>\n\n"
        )

    score = (
        f"{score_title}\n\n{score_bar(r.merge_score)}\n\n"
        f"**Recommendation:** {recommendation(r.merge_score)}\n\n"
        f"{previous}{r.summary}"
    )
    return "\n\n".join([header, score, suggestions_section(r.suggestions), _footer(result)])


def format_in_progress(tenant_id: str, pr_number: int) -> str:
    return (
        "## 🔍 PR Review In Progress\n\n---\n\n"
        "A review of this pull request has been triggered and is currently running.\n"
        "This comment will be updated automatically once the analysis is complete.\n\n"
        "> ⏳ This usually takes a minute or two.\n\n"
        f"{build_marker(tenant_id, pr_number)}"
    )


def format_follow_up_in_progress(tenant_id: str, pr_number: int) -> str:
    return (
        "## 🔄 Follow-Up Review In Progress\n\n---\n\n"
        "New commits have been pushed to this pull request since the last review.\n"
        "A follow-up review is running and will check whether earlier concerns were addressed.\n\n"
        "> ⏳ This usually takes a minute or two.\n\n"
        f"{build_marker(tenant_id, pr_number)}"
    )


def format_error(tenant_id: str, pr_number: int, message: str) -> str:
    return (
        "## ❌ PR Review Failed\n\n---\n\n"
        "### Error Details\n\n"
        "The PR review system encountered an error while analyzing this pull request:\n\n"
        f"```\n{message}\n```\n\n"
        "### What to do next\n\n"
        "1. **Manual Review:** Please proceed with manual code review\n"
        "2. **Retry:** Push a new commit or re-trigger the review if the issue was temporary\n\n"
        "> 🤖 This is an automated error message from the PR review system.\n\n"
        f"{build_marker(tenant_id, pr_number)}"
    )
