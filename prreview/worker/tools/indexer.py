import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.config import EMBED_TOKENS_PER_MINUTE, INDEX_BATCH_SIZE
from prreview.common.db import SessionLocal
from prreview.common.models import IndexingState, IndexingStatus
from prreview.worker.tools.splitter import split_text
from prreview.worker.tools.vector_store import VectorStore

logger = logging.getLogger(__name__)

IGNORED_EXTENSIONS = (
    # configuration and build
    ".json", ".yml", ".yaml", ".toml", ".lock", ".config", ".conf",
    # documentation
    ".md", ".txt", ".rst", ".adoc",
    # media
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp", ".mp4", ".webm",
    # fonts
    ".woff", ".woff2", ".ttf", ".eot", ".otf",
    # bundles
    ".map", ".min.js", ".min.css",
    # environment
    ".env", ".env.example", ".env.local",
    # archives
    ".zip", ".tar", ".gz", ".7z", ".rar",
    # binaries and native build output
    ".exe", ".dll", ".so", ".dylib", ".o", ".obj", ".a", ".lib", ".out",
    ".elf", ".d", ".gch", ".pch", ".ilk", ".exp", ".idb", ".pdb",
    # misc
    ".log", ".sh", ".bat", ".ps1", ".gitignore", ".dockerignore",
    ".editorconfig", ".npmrc", ".gitattributes", ".pdf",
    # python
    ".pyc", ".pyo", ".pyd", ".whl",
    # rust and jvm
    ".rlib", ".rmeta", ".class", ".jar", ".war", ".ear",
    ".wasm", ".bin", ".hex",
    # databases
    ".db", ".sqlite", ".sqlite3",
    # os files
    ".ds_store", "thumbs.db", "desktop.ini",
)

IGNORED_DIRS = (
    "node_modules/", ".yarn/", ".pnp/",
    "dist/", "build/", ".next/", "out/", ".turbo/",
    "coverage/", ".nyc_output/",
    ".cache/", ".parcel-cache/", ".eslintcache/",
    ".vscode/", ".idea/", ".vs/", ".fleet/", ".eclipse/",
    ".git/", ".github/", ".husky/",
    "docs/public/", "storybook-static/",
    "__fixtures__/", "fixtures/",
    ".snaplet/", "prisma/migrations/", "__snapshots__/",
    "tmp/", "temp/", ".temp/",
    "logs/",
    ".claude/", ".cursor/", ".opencode/", "agents/skills/", ".kiro/",
    "__checks__/",
    "public/fonts/", "public/images/", "public/videos/",
    "__pycache__/", ".venv/", "venv/", "env/", "virtualenv/", ".eggs/",
    ".pytest_cache/", ".tox/", ".hypothesis/", ".mypy_cache/", ".pyre/",
    ".pytype/", "htmlcov/", ".ruff_cache/",
    "cmakefiles/", "cmake-build-debug/", "cmake-build-release/", ".cmake/",
    "vcpkg_installed/", ".conan/",
    "target/", ".gradle/", ".m2/",
    ".bundle/", "vendor/",
    "bin/", "obj/", "debug/", "release/", "x64/", "x86/",
    "_build/", "site/", "_site/",
    "__macosx/", ".well-known/",
    "examples/", "cookbook/", "samples/", "demos/", "tutorials/", "guides/", "docs/",
)

IGNORED_DIR_SUFFIXES = (".egg-info", ".iml")


def is_relevant_file(path: str) -> bool:
    """False for generated, vendored, binary or documentation files."""
    lower = path.lower()
    if lower.endswith(IGNORED_EXTENSIONS):
        return False
    rooted = "/" + lower
    if any("/" + d in rooted for d in IGNORED_DIRS):
        return False
    return not any(seg.endswith(IGNORED_DIR_SUFFIXES) for seg in lower.split("/")[:-1])


def resume_paths(paths: List[str], last: Optional[str]) -> List[str]:
    """Paths still to index after a checkpoint at ``last``.

    ``paths`` must be sorted. If ``last`` is present the files strictly after
    it are returned; otherwise indexing resumes at the first path that sorts
    after it; if there is none, nothing is left.
    """
    if not last:
        return list(paths)
    if last in paths:
        return paths[paths.index(last) + 1:]
    for i, p in enumerate(paths):
        if p > last:
            return paths[i:]
    return []


def notebook_text(content: str) -> str:
    """Code and markdown cell sources of a Jupyter notebook; raw text if unparsable."""
    try:
        notebook = json.loads(content)
    except ValueError:
        logger.warning("Notebook parsing failed, using raw JSON")
        return content
    cells = notebook.get("cells") if isinstance(notebook, dict) else None
    if not isinstance(cells, list):
        return content

    parts = []
    for cell in cells:
        source = cell.get("source") or ""
        if isinstance(source, list):
            source = "".join(source)
        if not source:
            continue
        parts.append(f"### Notebook Markdown: {source}" if cell.get("cell_type") == "markdown" else source)
    return "\n\n".join(parts)


def decode_text(raw: bytes) -> Optional[str]:
    """UTF-8 text of a blob, or None for binary content."""
    if b"\x00" in raw:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


class TokenBudget:
    """Rolling one-minute budget of embedding tokens."""

    def __init__(
        self,
        per_minute: int = EMBED_TOKENS_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.per_minute = per_minute
        self.clock = clock
        self.sleep = sleep
        self.window_start = clock()
        self.used = 0

    async def acquire(self, tokens: int) -> None:
        now = self.clock()
        if now - self.window_start >= 60:
            self.window_start, self.used = now, 0
        if self.used and self.used + tokens > self.per_minute:
            wait = 60 - (now - self.window_start)
            logger.warning("Embedding token budget spent (%d tokens); pausing %.1fs", self.used, wait)
            await self.sleep(wait)
            self.window_start, self.used = self.clock(), 0
        self.used += tokens


class IndexingSummary(BaseModel):
    repository: str
    files_seen: int = 0
    files_indexed: int = 0
    files_skipped: int = 0
    chunks_stored: int = 0
    chunks_dropped: int = 0


class RepositoryIndexer:
    """Builds the per-repository chunk index used for review context."""

    def __init__(
        self,
        github_app,
        llm,
        store: Optional[VectorStore] = None,
        session_factory: Optional[async_sessionmaker] = None,
        batch_size: int = INDEX_BATCH_SIZE,
        budget: Optional[TokenBudget] = None,
    ) -> None:
        self.github_app = github_app
        self.llm = llm
        self.sessions = session_factory or SessionLocal
        self.store = store or VectorStore(self.sessions)
        self.batch_size = batch_size
        self.budget = budget or TokenBudget()

    async def _begin(self, tenant_id: str, repo: str) -> Optional[str]:
        """Move the state to IN_PROGRESS and return the checkpoint to resume from."""
        async with self.sessions() as s:
            state = (await s.execute(
                select(IndexingState).where(
                    IndexingState.tenant_id == tenant_id,
                    IndexingState.repository == repo
                )
            )).scalar_one_or_none()

            if state is None:
                state = IndexingState(tenant_id=tenant_id, repository=repo)
                s.add(state)
            elif state.status == IndexingStatus.COMPLETED.value:
                state.last_indexed_file_path = None
            state.status = IndexingStatus.IN_PROGRESS.value
            last = state.last_indexed_file_path
            await s.commit()
            return last

    async def _update(self, tenant_id: str, repo: str, **fields: Any) -> None:
        async with self.sessions() as s:
            state = (await s.execute(
                select(IndexingState).where(
                    IndexingState.tenant_id == tenant_id,
                    IndexingState.repository == repo
                )
            )).scalar_one()
            for k, v in fields.items():
                setattr(state, k, v)
            await s.commit()

    async def get_state(self, tenant_id: str, repo: str) -> Optional[IndexingState]:
        async with self.sessions() as s:
            return (await s.execute(
                select(IndexingState).where(
                    IndexingState.tenant_id == tenant_id,
                    IndexingState.repository == repo
                )
            )).scalar_one_or_none()

    async def index_repository(self, tenant_id: str, repo: str) -> IndexingSummary:
        """Index every relevant file of the default branch, resuming when possible."""
        logger.info("Starting repository indexing for %s (tenant %s)", repo, tenant_id)
        started = time.monotonic()
        summary = IndexingSummary(repository=repo)

        last = await self._begin(tenant_id, repo)
        try:
            gh = await self.github_app.client(tenant_id, repo)
            tree = await gh.list_tree()
            blobs = {t["path"]: t["sha"] for t in tree}

            relevant = sorted(p for p in blobs if is_relevant_file(p))
            todo = resume_paths(relevant, last)
            if last:
                logger.info("Resuming indexing of %s after %s (%d files left)", repo, last, len(todo))

            for i in range(0, len(todo), self.batch_size):
                batch = todo[i:i + self.batch_size]
                await self._index_batch(gh, tenant_id, repo, batch, blobs, summary)
                await self._update(tenant_id, repo, last_indexed_file_path=batch[-1])
                logger.info("Indexed %d/%d files of %s", i + len(batch), len(todo), repo)

            await self._update(tenant_id, repo, status=IndexingStatus.COMPLETED.value)
        except Exception:
            logger.exception("Repository indexing failed for %s", repo)
            try:
                await self._update(tenant_id, repo, status=IndexingStatus.FAILED.value)
            except Exception as e:
                logger.error("Could not mark indexing of %s as failed: %s", repo, e)
            raise

        logger.info(
            "Repository indexing completed for %s in %.1fs: %s",
            repo, time.monotonic() - started, summary.model_dump()
        )
        return summary

    async def _index_batch(
        self,
        gh,
        tenant_id: str,
        repo: str,
        batch: List[str],
        blobs: Dict[str, str],
        summary: IndexingSummary,
    ) -> None:
        pending: Dict[str, List[Dict[str, Any]]] = {}
        failed = []

        for path in batch:
            summary.files_seen += 1
            sha = blobs[path]

            if await self.store.get_file_hash(tenant_id, repo, path) == sha:
                summary.files_skipped += 1
                continue

            text = decode_text(await gh.get_blob(sha))
            if text is None or not text.strip():
                logger.info("Skipping binary or empty file %s", path)
                summary.files_skipped += 1
                continue

            if path.lower().endswith(".ipynb"):
                text = notebook_text(text)

            pending[path] = []
            summary.files_indexed += 1

            for idx, chunk in enumerate(split_text(text.strip(), path)):
                try:
                    vector = await self._embed(chunk)
                except Exception as e:
                    logger.warning("Embedding failed for %s chunk %d, will retry: %s", path, idx, e)
                    failed.append((path, idx, chunk))
                    continue
                pending[path].append({"index": idx, "content": chunk, "embedding": vector})

        if failed:
            logger.info("Retrying %d failed chunks", len(failed))
        for path, idx, chunk in failed:
            try:
                vector = await self._embed(chunk)
            except Exception as e:
                logger.warning("Retry failed for %s chunk %d, dropping it: %s", path, idx, e)
                summary.chunks_dropped += 1
                continue
            pending[path].append({"index": idx, "content": chunk, "embedding": vector})

        # File hashes are written only after the whole batch is embedded.
        for path, chunks in pending.items():
            file_id = await self.store.upsert_file(tenant_id, repo, path, blobs[path])
            chunks.sort(key=lambda c: c["index"])
            await self.store.replace_chunks(file_id, chunks)
            summary.chunks_stored += len(chunks)

    async def _embed(self, text: str) -> List[float]:
        await self.budget.acquire(self.llm.estimate_tokens(text))
        return await self.llm.embed(text)
