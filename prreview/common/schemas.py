from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

LinkType = Literal["closes", "fixes", "resolves"]
Severity = Literal["high", "medium", "low"]
SuggestionType = Literal["fix", "improvement", "optimization", "style"]


class WebhookUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: str = ""


class WebhookRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sha: str = ""


class WebhookPullRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: int
    title: str = ""
    body: Optional[str] = None
    html_url: str = ""
    draft: bool = False
    user: WebhookUser = Field(default_factory=WebhookUser)
    head: WebhookRef = Field(default_factory=WebhookRef)


class WebhookRepository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str


class WebhookInstallation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class WebhookPayload(BaseModel):
    """The subset of a ``pull_request`` webhook the pipeline reads.

    ``manual_trigger`` is set for reviews requested with a ``review`` PR
    comment; GitHub never sends it.
    """

    model_config = ConfigDict(extra="ignore")

    action: str
    pull_request: WebhookPullRequest
    repository: WebhookRepository
    installation: WebhookInstallation
    manual_trigger: bool = False


class WorkflowResponse(BaseModel):
    success: bool
    job_id: Optional[str] = None
    job_ids: Optional[List[str]] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class IssueLabel(BaseModel):
    name: str
    description: Optional[str] = None


class IssueComment(BaseModel):
    author: Optional[str] = None
    body: str = ""
    updated_at: Optional[str] = None


class LinkedIssue(BaseModel):
    number: int
    url: str
    link_type: LinkType
    title: str = ""
    body: str = ""
    labels: List[IssueLabel] = Field(default_factory=list)
    comments: List[IssueComment] = Field(default_factory=list)


class ChangedFile(BaseModel):
    filename: str
    status: Literal["added", "modified", "removed"] = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str = ""
    previous_filename: Optional[str] = None


class PRRecord(BaseModel):
    """Normalised pull request, the unit of work handed to the worker."""

    tenant_id: str
    repository: str
    pr_number: int
    pr_url: str = ""
    title: str = ""
    body: str = ""
    author: str = ""
    is_draft: bool = False
    linked_issues: List[LinkedIssue] = Field(default_factory=list)
    changed_files: List[ChangedFile] = Field(default_factory=list)
    formatted: str = ""
    pending_comment_id: Optional[int] = None

    def diff_text(self) -> str:
        """Concatenated patches of every changed file."""
        return "\n".join(
            f"\n--- {f.filename} ({f.status}) ---\n{f.patch}" for f in self.changed_files
        )


class ChunkMatch(BaseModel):
    file_path: str
    chunk_index: int
    content: str
    similarity: float


class ReviewContext(BaseModel):
    pr: PRRecord
    style_guide: Optional[str] = None
    readme: Optional[str] = None
    chunks: List[ChunkMatch] = Field(default_factory=list)
    findings: List[Dict[str, Any]] = Field(default_factory=list)


class FollowUpContext(BaseModel):
    previous_diff: str = ""
    previous_summary: str = ""
    previous_score: int = 0


class Suggestion(BaseModel):
    file: Optional[str] = None
    line_number: Optional[int] = None
    severity: Severity
    type: SuggestionType
    description: str = Field(min_length=1)
    reasoning: str = ""
    suggested_code: Optional[str] = None
    language: Optional[str] = None


class QualityMetrics(BaseModel):
    code_style: float = Field(ge=0, le=100)
    test_coverage: float = Field(ge=0, le=100)
    documentation: float = Field(ge=0, le=100)
    security: float = Field(ge=0, le=100)
    performance: float = Field(ge=0, le=100)
    maintainability: float = Field(ge=0, le=100)


class Review(BaseModel):
    """Structured review returned by the language model."""

    merge_score: int = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=1)
    code_quality: QualityMetrics
    suggestions: List[Suggestion]
    summary: str = Field(min_length=5)


class ReviewOutcome(BaseModel):
    """What the orchestrator reports back to the job queue."""

    record_id: int
    pr_number: int
    repository: str
    merge_score: int
    comment_id: Optional[int] = None
    is_follow_up: bool = False
    processing_ms: int = 0


class ReviewResult(BaseModel):
    """A stored review ready to be published as a PR comment."""

    record_id: int
    tenant_id: str
    repository: str
    pr_number: int
    review: Review
    processing_ms: int = 0
    created_at: datetime
    is_follow_up: bool = False
    previous_summary: Optional[str] = None
