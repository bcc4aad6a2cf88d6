import re
from typing import Dict, List, Optional

from prreview.common.config import CHUNK_OVERLAP, CHUNK_SIZE

GENERIC = ["\n\n", "\n", " ", ""]

LANGUAGE_SEPARATORS: Dict[str, List[str]] = {
    "python": ["\nclass ", "\ndef ", "\n\tdef ", "\n    def "] + GENERIC,
    "js": [
        "\nfunction ", "\nconst ", "\nlet ", "\nvar ", "\nclass ", "\nif ",
        "\nfor ", "\nwhile ", "\nswitch ", "\ncase ", "\ndefault ",
    ] + GENERIC,
    "go": ["\nfunc ", "\nvar ", "\nconst ", "\ntype ", "\nif ", "\nfor ", "\nswitch ", "\ncase "] + GENERIC,
    "java": [
        "\nclass ", "\npublic ", "\nprotected ", "\nprivate ", "\nstatic ",
        "\nif ", "\nfor ", "\nwhile ", "\nswitch ", "\ncase ",
    ] + GENERIC,
    "kotlin": [
        "\nclass ", "\npublic ", "\nprotected ", "\nprivate ", "\ninternal ",
        "\ncompanion ", "\nfun ", "\nval ", "\nvar ", "\nif ", "\nfor ",
        "\nwhile ", "\nwhen ", "\ncase ", "\nelse ",
    ] + GENERIC,
    "scala": [
        "\nclass ", "\nobject ", "\ndef ", "\nval ", "\nvar ", "\nif ",
        "\nfor ", "\nwhile ", "\nmatch ", "\ncase ",
    ] + GENERIC,
    "cpp": ["\nclass ", "\nvoid ", "\nint ", "\nfloat ", "\ndouble ", "\nif ", "\nfor ", "\nwhile ", "\nswitch ", "\ncase "] + GENERIC,
    "csharp": [
        "\ninterface ", "\nenum ", "\nimplements ", "\ndelegate ", "\nevent ",
        "\nclass ", "\nabstract ", "\npublic ", "\nprotected ", "\nprivate ",
        "\nstatic ", "\nreturn ", "\nif ", "\ncontinue ", "\nfor ",
        "\nforeach ", "\nwhile ", "\nswitch ", "\nbreak ", "\ncase ",
        "\nelse ", "\ntry ", "\nthrow ", "\nfinally ", "\ncatch ",
    ] + GENERIC,
    "rust": ["\nfn ", "\nconst ", "\nlet ", "\nif ", "\nwhile ", "\nfor ", "\nloop ", "\nmatch ", "\nconst "] + GENERIC,
    "ruby": ["\ndef ", "\nclass ", "\nif ", "\nunless ", "\nwhile ", "\nfor ", "\ndo ", "\nbegin ", "\nrescue "] + GENERIC,
    "php": ["\nfunction ", "\nclass ", "\nif ", "\nforeach ", "\nwhile ", "\ndo ", "\nswitch ", "\ncase "] + GENERIC,
    "swift": [
        "\nfunc ", "\nclass ", "\nstruct ", "\nenum ", "\nif ", "\nfor ",
        "\nwhile ", "\ndo ", "\nswitch ", "\ncase ",
    ] + GENERIC,
    "markdown": [
        "\n#{1,6} ", "```\n", "\n\\*\\*\\*+\n", "\n---+\n", "\n___+\n",
    ] + GENERIC,
    "html": [
        "<body", "<div", "<p", "<br", "<li", "<h1", "<h2", "<h3", "<h4",
        "<h5", "<h6", "<span", "<table", "<tr", "<td", "<th", "<ul", "<ol",
        "<header", "<footer", "<nav", "<head", "<style", "<script", "<meta",
        "<title", "",
    ],
    "sol": [
        "\npragma ", "\nusing ", "\ncontract ", "\ninterface ", "\nlibrary ",
        "\nconstructor ", "\ntype ", "\nfunction ", "\nevent ", "\nmodifier ",
        "\nerror ", "\nstruct ", "\nenum ", "\nif ", "\nfor ", "\nwhile ",
        "\ndo while ", "\nassembly ",
    ] + GENERIC,
    "proto": ["\npackage ", "\nimport ", "\nsyntax ", "\nmessage ", "\nservice ", "\nenum ", "\noption "] + GENERIC,
    "rst": ["\n=+\n", "\n-+\n", "\n\\*+\n", "\n\n.. *\n\n"] + GENERIC,
    "latex": [
        "\n\\\\chapter{", "\n\\\\section{", "\n\\\\subsection{",
        "\n\\\\subsubsection{", "\n\\\\begin{enumerate}", "\n\\\\begin{itemize}",
        "\n\\\\begin{description}", "\n\\\\begin{list}", "\n\\\\begin{quote}",
        "\n\\\\begin{quotation}", "\n\\\\begin{verse}", "\n\\\\begin{verbatim}",
        "\n\\\\begin{align}", "\\$\\$", "\\$",
    ] + GENERIC,
}

# Languages whose separators are regular expressions rather than literals.
REGEX_LANGUAGES = {"markdown", "rst", "latex"}

EXTENSION_LANGUAGE: Dict[str, str] = {
    "js": "js", "jsx": "js", "ts": "js", "tsx": "js", "mjs": "js", "cjs": "js",
    "py": "python", "ipynb": "python", "pyw": "python",
    "cpp": "cpp", "cxx": "cpp", "cc": "cpp", "hpp": "cpp", "h": "cpp", "c": "cpp",
    "cs": "csharp",
    "java": "java",
    "kt": "kotlin", "kts": "kotlin",
    "scala": "scala", "sc": "scala",
    "go": "go",
    "rb": "ruby", "rake": "ruby",
    "rs": "rust",
    "swift": "swift",
    "php": "php", "phtml": "php",
    "html": "html", "htm": "html",
    "markdown": "markdown", "md": "markdown", "mdx": "markdown",
    "rst": "rst",
    "latex": "latex", "tex": "latex",
    "proto": "proto",
    "sol": "sol",
}


def language_for(path: str) -> Optional[str]:
    """Splitter language for a file path, or None for unknown extensions."""
    if "." not in path.rsplit("/", 1)[-1]:
        return None
    return EXTENSION_LANGUAGE.get(path.rsplit(".", 1)[-1].lower())


class RecursiveSplitter:
    """Recursive character splitting.

    Text is split on the coarsest separator that occurs in it, class and
    function boundaries first, down to single characters. The pieces are
    merged back into chunks of at most ``chunk_size`` characters with
    ``chunk_overlap`` characters carried between neighbours.
    """

    def __init__(
        self,
        separators: Optional[List[str]] = None,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        is_regex: bool = False,
    ) -> None:
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self.separators = separators or GENERIC
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.is_regex = is_regex

    @classmethod
    def for_path(cls, path: str, **kwargs) -> "RecursiveSplitter":
        lang = language_for(path)
        if lang is None:
            return cls(GENERIC, **kwargs)
        return cls(LANGUAGE_SEPARATORS[lang], is_regex=lang in REGEX_LANGUAGES, **kwargs)

    def split(self, text: str) -> List[str]:
        return [c for c in self._split(text, self.separators) if c.strip()]

    def _pattern(self, sep: str) -> str:
        return sep if self.is_regex else re.escape(sep)

    def _split(self, text: str, separators: List[str]) -> List[str]:
        separator = separators[-1]
        rest: List[str] = []
        for i, sep in enumerate(separators):
            if sep == "":
                separator = sep
                break
            if re.search(self._pattern(sep), text):
                separator = sep
                rest = separators[i + 1:]
                break

        pieces = _split_keep(text, self._pattern(separator)) if separator else list(text)

        chunks: List[str] = []
        good: List[str] = []
        for piece in pieces:
            if len(piece) < self.chunk_size:
                good.append(piece)
                continue
            if good:
                chunks.extend(self._merge(good))
                good = []
            if rest:
                chunks.extend(self._split(piece, rest))
            else:
                chunks.append(piece)
        if good:
            chunks.extend(self._merge(good))
        return chunks

    def _merge(self, pieces: List[str]) -> List[str]:
        """Pack pieces into chunks, keeping a tail of up to chunk_overlap chars."""
        out: List[str] = []
        current: List[str] = []
        total = 0
        for piece in pieces:
            if current and total + len(piece) > self.chunk_size:
                chunk = "".join(current).strip()
                if chunk:
                    out.append(chunk)
                while current and (total > self.chunk_overlap or total + len(piece) > self.chunk_size):
                    total -= len(current[0])
                    current.pop(0)
            current.append(piece)
            total += len(piece)
        chunk = "".join(current).strip()
        if chunk:
            out.append(chunk)
        return out


def _split_keep(text: str, pattern: str) -> List[str]:
    """Split on ``pattern`` keeping each separator at the start of the next piece."""
    parts = re.split(f"({pattern})", text)
    pieces = [parts[0]] if parts[0] else []
    for i in range(1, len(parts), 2):
        piece = parts[i] + (parts[i + 1] if i + 1 < len(parts) else "")
        if piece:
            pieces.append(piece)
    return pieces


def split_text(text: str, path: str) -> List[str]:
    """Split file content into chunks using the separators for its language."""
    return RecursiveSplitter.for_path(path).split(text)
