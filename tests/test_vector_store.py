import pytest

from prreview.common.errors import ErrorKind, ReviewError
from prreview.worker.tools.vector_store import VectorStore


async def seed(store, path, vectors, tenant="42", repo="acme/widgets"):
    file_id = await store.upsert_file(tenant, repo, path, f"sha-{path}")
    await store.replace_chunks(file_id, [
        {"index": i, "content": f"{path}#{i}", "embedding": v} for i, v in enumerate(vectors)
    ])
    return file_id


class TestVectorStore:
    @pytest.mark.asyncio
    async def test_results_ordered_and_thresholded(self, sessions):
        store = VectorStore(sessions)
        await seed(store, "a.py", [[1.0, 0.0], [0.0, 1.0]])
        await seed(store, "b.py", [[0.8, 0.6]])

        matches = await store.similarity_search([1.0, 0.0], "42", "acme/widgets", limit=5, min_similarity=0.5)

        assert [m.content for m in matches] == ["a.py#0", "b.py#0"]
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[1].similarity == pytest.approx(0.8)
        assert matches[1].file_path == "b.py"

    @pytest.mark.asyncio
    async def test_limit_and_tenant_isolation(self, sessions):
        store = VectorStore(sessions)
        await seed(store, "a.py", [[1.0, 0.0], [0.9, 0.1], [0.95, 0.05]])
        await seed(store, "other.py", [[1.0, 0.0]], tenant="99")

        matches = await store.similarity_search([1.0, 0.0], "42", "acme/widgets", limit=2, min_similarity=0.0)

        assert [m.chunk_index for m in matches] == [0, 2]

    @pytest.mark.asyncio
    async def test_empty_repository(self, sessions):
        assert await VectorStore(sessions).similarity_search([1.0], "42", "acme/none") == []

    @pytest.mark.asyncio
    async def test_replace_chunks_replaces_and_upsert_keeps_id(self, sessions):
        store = VectorStore(sessions)
        first = await seed(store, "a.py", [[1.0, 0.0], [0.0, 1.0]])
        second = await store.upsert_file("42", "acme/widgets", "a.py", "new-sha")
        await store.replace_chunks(second, [{"index": 0, "content": "fresh", "embedding": [1.0, 0.0]}])

        assert first == second
        assert await store.get_file_hash("42", "acme/widgets", "a.py") == "new-sha"
        matches = await store.similarity_search([1.0, 0.0], "42", "acme/widgets", min_similarity=0.0)
        assert [m.content for m in matches] == ["fresh"]

    @pytest.mark.asyncio
    async def test_bad_chunk_raises_persistence_error(self, sessions):
        store = VectorStore(sessions)
        file_id = await seed(store, "a.py", [[1.0, 0.0]])

        with pytest.raises(ReviewError) as exc:
            await store.replace_chunks(file_id, [{"index": 0, "content": "x"}])
        assert exc.value.kind == ErrorKind.PERSISTENCE

        matches = await store.similarity_search([1.0, 0.0], "42", "acme/widgets", min_similarity=0.0)
        assert [m.content for m in matches] == ["a.py#0"]
