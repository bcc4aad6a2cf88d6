import logging
import struct
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from prreview.common.db import SessionLocal
from prreview.common.errors import ErrorKind, ReviewError
from prreview.common.models import CodeChunk, CodeFile
from prreview.common.schemas import ChunkMatch

logger = logging.getLogger(__name__)


def _to_bytes(vector: List[float]) -> bytes:
    """Convert a list of floats to bytes for storage."""
    return struct.pack(f"{len(vector)}f", *vector)


def _from_bytes(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class VectorStore:
    """Code files and embedded chunks of indexed repositories."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        self.sessions = session_factory or SessionLocal

    async def upsert_file(self, tenant_id: str, repo: str, path: str, file_hash: str) -> int:
        """Create or refresh the CodeFile row and return its id."""
        async with self.sessions() as s:
            row = (await s.execute(
                select(CodeFile).where(
                    CodeFile.tenant_id == tenant_id,
                    CodeFile.repository == repo,
                    CodeFile.file_path == path
                )
            )).scalar_one_or_none()

            if row is None:
                row = CodeFile(tenant_id=tenant_id, repository=repo, file_path=path, file_hash=file_hash)
                s.add(row)
            else:
                row.file_hash = file_hash
                row.last_indexed_at = datetime.now(timezone.utc)
            await s.commit()
            return row.id

    async def get_file_hash(self, tenant_id: str, repo: str, path: str) -> Optional[str]:
        async with self.sessions() as s:
            return (await s.execute(
                select(CodeFile.file_hash).where(
                    CodeFile.tenant_id == tenant_id,
                    CodeFile.repository == repo,
                    CodeFile.file_path == path
                )
            )).scalar_one_or_none()

    async def replace_chunks(self, file_id: int, chunks: List[Dict[str, Any]]) -> None:
        """Replace every chunk of a file in one transaction.

        Each chunk is ``{"index", "content", "embedding"}``.
        """
        try:
            async with self.sessions() as s:
                async with s.begin():
                    await s.execute(delete(CodeChunk).where(CodeChunk.code_file_id == file_id))
                    for c in chunks:
                        s.add(CodeChunk(
                            code_file_id=file_id,
                            chunk_index=c["index"],
                            content=c["content"],
                            embedding=_to_bytes(c["embedding"])
                        ))
        except Exception as e:
            raise ReviewError(
                ErrorKind.PERSISTENCE,
                f"Failed to store chunks for file {file_id}: {e}",
                context={"file_id": file_id}
            ) from e

    async def similarity_search(
        self,
        embedding: List[float],
        tenant_id: str,
        repo: str,
        limit: int = 5,
        min_similarity: float = 0.7
    ) -> List[ChunkMatch]:
        """Chunks of the repository ordered by cosine similarity to ``embedding``.

        Chunks below ``min_similarity`` are dropped. Errors are logged and an
        empty list is returned.
        """
        try:
            async with self.sessions() as s:
                rows = (await s.execute(
                    select(CodeChunk.chunk_index, CodeChunk.content, CodeChunk.embedding, CodeFile.file_path)
                    .join(CodeFile, CodeChunk.code_file_id == CodeFile.id)
                    .where(CodeFile.tenant_id == tenant_id, CodeFile.repository == repo)
                )).all()

            if not rows:
                return []

            query = np.asarray(embedding, dtype=np.float32)
            matrix = np.stack([_from_bytes(r.embedding) for r in rows])
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            norms[norms == 0] = np.inf
            scores = matrix @ query / norms

            order = np.argsort(-scores, kind="stable")
            out = []
            for i in order:
                score = float(scores[i])
                if score < min_similarity:
                    break
                r = rows[i]
                out.append(ChunkMatch(
                    file_path=r.file_path,
                    chunk_index=r.chunk_index,
                    content=r.content,
                    similarity=score
                ))
                if len(out) >= limit:
                    break
            return out
        except Exception as e:
            logger.error("Error finding similar chunks for %s: %s", repo, e)
            return []
