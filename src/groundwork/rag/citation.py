"""Citation binding for Groundwork RAG.

The synthesis context numbers each evidence chunk ``[^1]``, ``[^2]``, ...
in evidence-set order. The model is asked to cite with the same markers.
After generation the binder checks every marker against the evidence
set, normalizes the ones that resolve and removes the ones that do not.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

from groundwork.core.errors import CitationResolutionWarning
from groundwork.core.types import Citation, EvidenceChunk, EvidenceSet

logger = logging.getLogger(__name__)

# ``[^3]`` or ``[3]``, with the spaces in front of it.
_MARKER_PATTERN = re.compile(r"([ \t]*)\[(\^?)(\d+)\]")
# The start of a marker that more text could still complete.
_PARTIAL_MARKER = re.compile(r"[ \t]*(?:\[\^?\d*)?\Z")
_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"


def source_name(chunk: EvidenceChunk) -> str:
    """Pick a human-readable source label for a chunk."""
    meta = chunk.metadata
    if meta.get("title"):
        return str(meta["title"])
    if meta.get("url"):
        return str(meta["url"])
    if meta.get("filepath"):
        return os.path.basename(str(meta["filepath"])) or str(meta["filepath"])
    return chunk.doc_id


def build_context(evidence: EvidenceSet) -> str:
    """Format the evidence set into the prompt context with citation anchors."""
    blocks: list[str] = []
    for i, chunk in enumerate(evidence.chunks, 1):
        header = f"[^{i}] (Source: {source_name(chunk)}"
        if chunk.section_path:
            header += f", Section: {' > '.join(chunk.section_path)}"
        header += ")"
        blocks.append(f"{header}\n{chunk.content}")
    return "\n\n".join(blocks)


def _partial_suffix(text: str, token: str) -> int:
    """Length of the longest proper prefix of *token* that ends *text*."""
    for size in range(min(len(token) - 1, len(text)), 0, -1):
        if text.endswith(token[:size]):
            return size
    return 0


@dataclass
class BindResult:
    """Outcome of binding an answer to its evidence."""

    text: str
    citations: list[Citation]
    warnings: list[CitationResolutionWarning] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return len(self.warnings)


class CitationStream:
    """Binds citation markers in model output as it arrives.

    Text passes through three stages: reasoning blocks are removed, markers
    are resolved, and leading and trailing whitespace is trimmed. Each
    stage holds back only the tail that a later chunk could still change,
    so the concatenated output of :meth:`feed` and :meth:`finish` is the
    same however the text was split.

    A marker that resolves is rewritten as ``[^n]``, or removed together
    with the whitespace before it when *keep_markers* is False. A ``[^n]``
    that does not resolve is removed the same way and reported. A bare
    ``[n]`` that does not resolve is ordinary text, such as a year.
    """

    def __init__(self, evidence: EvidenceSet, *, keep_markers: bool = True) -> None:
        self._chunks = evidence.chunks
        self._keep_markers = keep_markers
        self._cited: dict[int, Citation] = {}
        self.warnings: list[CitationResolutionWarning] = []
        self._raw = ""
        self._marker_tail = ""
        self._started = False
        self._space_tail = ""

    @property
    def citations(self) -> list[Citation]:
        return list(self._cited.values())

    @property
    def dropped(self) -> int:
        return len(self.warnings)

    def feed(self, text: str) -> str:
        """Accept the next piece of model output and return what is now final."""
        return self._trim(self._resolve(self._drop_reasoning(text)))

    def finish(self) -> str:
        """Flush held text at the end of the answer."""
        # An unclosed <think> is kept as written.
        tail, self._raw = self._raw, ""
        text = self._resolve(tail, final=True)
        return self._trim(text)

    def _drop_reasoning(self, text: str) -> str:
        buf = self._raw + text
        out: list[str] = []
        while True:
            start = buf.find(_THINK_OPEN)
            if start == -1:
                safe = len(buf) - _partial_suffix(buf, _THINK_OPEN)
                out.append(buf[:safe])
                buf = buf[safe:]
                break
            end = buf.find(_THINK_CLOSE, start)
            out.append(buf[:start])
            if end == -1:
                buf = buf[start:]
                break
            buf = buf[end + len(_THINK_CLOSE):]
        self._raw = buf
        return "".join(out)

    def _resolve(self, text: str, *, final: bool = False) -> str:
        buf = self._marker_tail + text
        if final:
            safe = len(buf)
        else:
            safe = _PARTIAL_MARKER.search(buf).start()
        self._marker_tail = buf[safe:]
        return _MARKER_PATTERN.sub(self._replace, buf[:safe])

    def _replace(self, match: re.Match[str]) -> str:
        space, caret, digits = match.groups()
        marker = int(digits)
        if 1 <= marker <= len(self._chunks):
            if marker not in self._cited:
                chunk = self._chunks[marker - 1]
                self._cited[marker] = Citation(
                    marker=marker,
                    chunk_id=chunk.chunk_id,
                    doc_id=chunk.doc_id,
                    section_path=chunk.section_path,
                    source=source_name(chunk),
                )
            return f"{space}[^{marker}]" if self._keep_markers else ""
        if not caret:
            return match.group(0)
        warning = CitationResolutionWarning(
            f"Citation marker [^{digits}] does not match any of "
            f"{len(self._chunks)} evidence chunks"
        )
        self.warnings.append(warning)
        logger.warning("%s", warning)
        return ""

    def _trim(self, text: str) -> str:
        if not self._started:
            text = text.lstrip()
            if not text:
                return ""
            self._started = True
        body = text.rstrip()
        if not body:
            self._space_tail += text
            return ""
        out = self._space_tail + body
        self._space_tail = text[len(body):]
        return out


class CitationBinder:
    """Resolves ``[^n]`` markers in generated text against an EvidenceSet."""

    def stream(self, evidence: EvidenceSet, *, keep_markers: bool = True) -> CitationStream:
        """Start binding an answer that arrives in pieces."""
        return CitationStream(evidence, keep_markers=keep_markers)

    def bind(
        self,
        answer_text: str,
        evidence: EvidenceSet,
        *,
        keep_markers: bool = True,
    ) -> BindResult:
        """Validate and normalize the markers in *answer_text*.

        Returns:
            A BindResult whose text only contains markers that resolve to a
            chunk of *evidence*, with one Citation per distinct marker in
            order of first appearance. Markers that do not resolve are
            removed and reported as warnings.
        """
        stream = self.stream(evidence, keep_markers=keep_markers)
        text = stream.feed(answer_text) + stream.finish()
        return BindResult(text=text, citations=stream.citations, warnings=stream.warnings)
