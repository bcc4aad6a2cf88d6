import logging
import re
import time
from typing import Any, Dict, List, Optional

from prreview.common.config import GITHUB_WEB, REVIEW_DRAFT_PRS
from prreview.common.errors import ErrorKind, ReviewError, upstream_error
from prreview.common.schemas import (
    ChangedFile, IssueComment, IssueLabel, LinkedIssue, PRRecord, WebhookPayload
)

logger = logging.getLogger(__name__)

_VERBS = r"(closes|resolves|fixes|close|resolve|fix)"
BARE_REF = re.compile(rf"\b{_VERBS}\s+#(\d+)", re.IGNORECASE)
URL_REF = re.compile(
    rf"\b{_VERBS}\s+(https?://[^/\s]+/([^/\s]+)/([^/\s]+)/issues/(\d+))",
    re.IGNORECASE
)

LINK_TYPES = {
    "close": "closes", "closes": "closes",
    "fix": "fixes", "fixes": "fixes",
    "resolve": "resolves", "resolves": "resolves",
}

ISSUE_QUERY = """
query($owner: String!, $repo: String!, $issueNumber: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $issueNumber) {
      title
      body
      url
      labels(first: 100) { nodes { name description } }
      comments(first: 100) {
        nodes {
          author { login __typename }
          body
          updatedAt
        }
      }
    }
  }
}
"""

NOT_ELIGIBLE = "PR_NOT_ELIGIBLE_ERROR"


def normalize_status(status: str) -> str:
    """Map GitHub's file statuses onto added/modified/removed."""
    if status in ("added", "removed"):
        return status
    return "modified"


def find_references(body: str, repo: str) -> List[Dict[str, Any]]:
    """Issue references in a PR body, in order, without duplicates.

    Each reference is ``{number, url, link_type, owner, name}`` where
    owner/name identify the repository the issue lives in.
    """
    refs: List[Dict[str, Any]] = []
    seen = set()
    owner, name = repo.split("/", 1)

    def add(number: int, url: str, verb: str, ref_owner: str, ref_name: str) -> None:
        if (number, url) in seen:
            return
        seen.add((number, url))
        refs.append({
            "number": number,
            "url": url,
            "link_type": LINK_TYPES[verb.lower()],
            "owner": ref_owner,
            "name": ref_name,
        })

    for m in BARE_REF.finditer(body or ""):
        n = int(m.group(2))
        add(n, f"{GITHUB_WEB}/{repo}/issues/{n}", m.group(1), owner, name)

    for m in URL_REF.finditer(body or ""):
        add(int(m.group(5)), m.group(2), m.group(1), m.group(3), m.group(4))

    return refs


def format_pr(pr: PRRecord) -> str:
    """Render the pull request as the text block the review prompts embed."""
    issues = "\n\n".join(
        f"- #{i.number}: {i.title}\n"
        f"  url: {i.url}\n"
        f"  body: {i.body}\n"
        f"  labels: {', '.join(f'{l.name} ({l.description})' if l.description else l.name for l in i.labels)}"
        for i in pr.linked_issues
    )
    files = "\n".join(
        f"{f.filename} ({f.status}, +{f.additions}/-{f.deletions})"
        + (f" (renamed from {f.previous_filename})" if f.previous_filename else "")
        for f in pr.changed_files
    )
    return (
        "Here's the pull request summary:\n\n"
        "PULL REQUEST CHANGES:\n"
        f"Repository: {pr.repository}\n"
        f"PR #{pr.pr_number}: {pr.title}\n"
        f"Author: {pr.author}\n\n"
        f"Body:\n{pr.body or 'No body provided'}\n\n"
        f"Linked Issue(s):\n{issues or 'None'}\n\n"
        f"CHANGED FILES:\n{files}\n\n"
        f"CODE CHANGES PREVIEW:\n{pr.diff_text()}"
    )


class PRExtractor:
    """Turns a webhook payload into a PRRecord and decides eligibility."""

    def __init__(self, github_app, review_drafts: bool = REVIEW_DRAFT_PRS) -> None:
        self.github_app = github_app
        self.review_drafts = review_drafts

    def is_eligible(self, pr: PRRecord, manual: bool = False) -> bool:
        return self.ineligibility_reason(pr, manual) is None

    def ineligibility_reason(self, pr: PRRecord, manual: bool = False) -> Optional[str]:
        """Why ``pr`` is not reviewed, or None.

        A manually requested review does not need a linked issue.
        """
        if pr.is_draft and not self.review_drafts:
            return "PR is in draft status"
        if not pr.linked_issues and not manual:
            return "PR does not link to any issues"
        return None

    async def fetch_review_request(self, tenant_id: str, repo: str, pr_number: int) -> WebhookPayload:
        """Payload for a review requested by a ``review`` comment on the PR."""
        gh = await self.github_app.client(tenant_id, repo)
        pull = await gh.get_pull(pr_number)
        return WebhookPayload.model_validate({
            "action": "opened",
            "pull_request": pull,
            "repository": {"full_name": repo},
            "installation": {"id": int(tenant_id)},
            "manual_trigger": True,
        })

    async def extract_linked_issues(self, body: str, tenant_id: str, repo: str) -> List[LinkedIssue]:
        """Parse closing keywords in ``body`` and fetch each referenced issue.

        A fetch failure keeps the reference with empty details.
        """
        refs = find_references(body, repo)
        if not refs:
            return []

        gh = await self.github_app.client(tenant_id, repo)
        issues = []
        for ref in refs:
            details = await self._fetch_issue(gh, ref["owner"], ref["name"], ref["number"])
            issues.append(LinkedIssue(
                number=ref["number"],
                url=ref["url"],
                link_type=ref["link_type"],
                **(details or {})
            ))
        return issues

    async def _fetch_issue(self, gh, owner: str, name: str, number: int) -> Optional[Dict[str, Any]]:
        try:
            data = await gh.graphql(ISSUE_QUERY, {"owner": owner, "repo": name, "issueNumber": number})
            issue = data["repository"]["issue"]
            if issue is None:
                return None
        except (ReviewError, KeyError, TypeError) as e:
            logger.warning("Could not fetch issue %s/%s#%d: %s", owner, name, number, e)
            return None

        comments = [
            IssueComment(
                author=(c.get("author") or {}).get("login"),
                body=c.get("body") or "",
                updated_at=c.get("updatedAt")
            )
            for c in (issue.get("comments") or {}).get("nodes", [])
            if (c.get("author") or {}).get("__typename") != "Bot"
        ]
        labels = [
            IssueLabel(name=l["name"], description=l.get("description"))
            for l in (issue.get("labels") or {}).get("nodes", [])
        ]
        return {
            "title": issue.get("title") or "",
            "body": issue.get("body") or "",
            "labels": labels,
            "comments": comments,
        }

    async def fetch_changed_files(self, tenant_id: str, repo: str, pr_number: int) -> List[ChangedFile]:
        gh = await self.github_app.client(tenant_id, repo)
        try:
            files = await gh.pr_files(pr_number)
        except ReviewError as e:
            raise upstream_error(
                f"Failed to fetch changed files for PR #{pr_number}",
                e.status,
                repository=repo,
                pr_number=pr_number,
                cause=e.message
            ) from e

        return [
            ChangedFile(
                filename=f["filename"],
                status=normalize_status(f.get("status", "modified")),
                additions=f.get("additions", 0),
                deletions=f.get("deletions", 0),
                patch=f.get("patch") or "",
                previous_filename=f.get("previous_filename")
            )
            for f in files
        ]

    async def from_payload(self, payload: WebhookPayload) -> PRRecord:
        """PRRecord with linked issues resolved but no changed files yet."""
        pr = payload.pull_request
        tenant_id = str(payload.installation.id)
        repo = payload.repository.full_name

        return PRRecord(
            tenant_id=tenant_id,
            repository=repo,
            pr_number=pr.number,
            pr_url=pr.html_url,
            title=pr.title,
            body=pr.body or "",
            author=pr.user.login,
            is_draft=pr.draft,
            linked_issues=await self.extract_linked_issues(pr.body or "", tenant_id, repo)
        )

    async def build_context(self, payload: WebhookPayload) -> PRRecord:
        """Complete PRRecord for an eligible pull request.

        Raises ``ReviewError(kind=ineligible)`` when the PR is a draft or
        links no issue.
        """
        started = time.monotonic()
        pr = await self.from_payload(payload)

        reason = self.ineligibility_reason(pr, payload.manual_trigger)
        if reason:
            self.log_analysis_decision(pr, False, reason)
            raise ReviewError(
                ErrorKind.INELIGIBLE,
                f"PR #{pr.pr_number} is not eligible for analysis: {reason}",
                code=NOT_ELIGIBLE,
                context={"pr_number": pr.pr_number, "repository": pr.repository}
            )

        pr.changed_files = await self.fetch_changed_files(pr.tenant_id, pr.repository, pr.pr_number)
        pr.formatted = format_pr(pr)

        self.log_analysis_decision(pr, True)
        logger.info(
            "PR data extraction for %s#%d took %dms",
            pr.repository, pr.pr_number, int((time.monotonic() - started) * 1000)
        )
        return pr

    def log_analysis_decision(self, pr: PRRecord, eligible: bool, reason: Optional[str] = None) -> None:
        logger.info(
            "PR %s for AI review: tenant=%s repo=%s pr=%d author=%s draft=%s "
            "linked_issues=%d changed_files=%d reason=%s",
            "eligible" if eligible else "not eligible",
            pr.tenant_id, pr.repository, pr.pr_number, pr.author, pr.is_draft,
            len(pr.linked_issues), len(pr.changed_files), reason
        )
