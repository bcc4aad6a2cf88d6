import logging
from typing import Any, Dict, List, Optional

from prreview.common.config import CONTEXT_CHUNK_LIMIT, CONTEXT_MIN_SIMILARITY, SKIP_CODE_CHUNKS
from prreview.common.errors import ReviewError
from prreview.common.schemas import ChunkMatch, PRRecord, ReviewContext
from prreview.worker.tools.vector_store import VectorStore

logger = logging.getLogger(__name__)

STYLE_GUIDE_PATHS = ("CONTRIBUTING.md", "docs/CONTRIBUTING.md", ".github/CONTRIBUTING.md", "STYLEGUIDE.md")
README_PATHS = ("README.md", "docs/README.md")


def build_query(pr: PRRecord) -> str:
    """Text embedded to look up code related to a pull request."""
    issues = "\n\n".join(f"Issue #{i.number}: {i.title}\n{i.body}" for i in pr.linked_issues)
    files = ", ".join(f.filename for f in pr.changed_files)
    return (
        f"PR Title: {pr.title}\n"
        f"PR Description: {pr.body}\n"
        f"Linked Issues: {issues}\n"
        f"Changed Files: {files}"
    )


class ContextRetriever:
    """Gathers style guide, README and similar indexed code for a review."""

    def __init__(
        self,
        github_app,
        llm,
        store: VectorStore,
        chunk_limit: int = CONTEXT_CHUNK_LIMIT,
        min_similarity: float = CONTEXT_MIN_SIMILARITY,
        skip_chunks: bool = SKIP_CODE_CHUNKS,
    ) -> None:
        self.github_app = github_app
        self.llm = llm
        self.store = store
        self.chunk_limit = chunk_limit
        self.min_similarity = min_similarity
        self.skip_chunks = skip_chunks

    async def build(self, pr: PRRecord, findings: Optional[List[Dict[str, Any]]] = None) -> ReviewContext:
        logger.info("Starting context analysis for PR #%s in %s", pr.pr_number, pr.repository)
        gh = await self.github_app.client(pr.tenant_id, pr.repository)

        style_guide = await self._first_file(gh, STYLE_GUIDE_PATHS)
        readme = await self._first_file(gh, README_PATHS)
        chunks = await self.relevant_chunks(pr)

        logger.info(
            "Context for PR #%s: style guide=%s readme=%s chunks=%d",
            pr.pr_number, style_guide is not None, readme is not None, len(chunks)
        )
        return ReviewContext(
            pr=pr,
            style_guide=style_guide,
            readme=readme,
            chunks=chunks,
            findings=findings or []
        )

    async def _first_file(self, gh, paths) -> Optional[str]:
        for path in paths:
            try:
                content = await gh.get_file_text(path)
            except ReviewError as e:
                logger.debug("Could not read %s: %s", path, e)
                continue
            if content:
                return content
        return None

    async def relevant_chunks(self, pr: PRRecord) -> List[ChunkMatch]:
        if self.skip_chunks:
            logger.info("Skipping relevant code chunk retrieval")
            return []

        try:
            embedding = await self.llm.embed(build_query(pr))
        except Exception as e:
            logger.error("Failed to embed context query for PR #%s: %s", pr.pr_number, e)
            return []

        return await self.store.similarity_search(
            embedding,
            pr.tenant_id,
            pr.repository,
            limit=self.chunk_limit,
            min_similarity=self.min_similarity
        )
