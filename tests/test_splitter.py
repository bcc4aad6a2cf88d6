import pytest

from prreview.worker.tools.splitter import RecursiveSplitter, language_for, split_text


def test_language_for_known_and_unknown_extensions():
    assert language_for("src/app.py") == "python"
    assert language_for("web/index.TSX") == "js"
    assert language_for("docs/guide.md") == "markdown"
    assert language_for("Makefile") is None
    assert language_for("data/blob.xyz") is None


def test_overlap_must_be_smaller_than_size():
    with pytest.raises(ValueError):
        RecursiveSplitter(chunk_size=100, chunk_overlap=100)


def test_short_text_is_one_chunk():
    assert split_text("def f():\n    return 1\n", "m.py") == ["def f():\n    return 1"]


def test_python_splits_on_definitions():
    source = "\n".join(
        f"def function_{i}(value):\n    return value * {i}\n" for i in range(6)
    )
    chunks = RecursiveSplitter.for_path("m.py", chunk_size=80, chunk_overlap=0).split(source)

    assert len(chunks) > 1
    assert all(len(c) <= 80 for c in chunks)
    assert chunks[0].startswith("def function_0")
    assert all(c.startswith("def function_") for c in chunks)


def test_chunks_overlap_by_whole_pieces():
    text = " ".join(f"word{i:02d}" for i in range(40))
    chunks = RecursiveSplitter(chunk_size=50, chunk_overlap=20).split(text)

    assert len(chunks) > 2
    assert all(len(c) <= 50 for c in chunks)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev.split()[-1] in nxt.split()


def test_oversized_piece_falls_back_to_characters():
    chunks = RecursiveSplitter(chunk_size=10, chunk_overlap=0).split("x" * 35)
    assert chunks == ["x" * 10, "x" * 10, "x" * 10, "x" * 5]


def test_markdown_separators_are_patterns():
    text = "# Title\n\nintro text here\n## Part one\n\nbody one\n## Part two\n\nbody two"
    chunks = RecursiveSplitter.for_path("README.md", chunk_size=30, chunk_overlap=0).split(text)

    assert any(c.startswith("## Part one") for c in chunks)
    assert any(c.startswith("## Part two") for c in chunks)


def test_blank_chunks_are_dropped():
    assert split_text("\n\n\n   \n", "a.py") == []
