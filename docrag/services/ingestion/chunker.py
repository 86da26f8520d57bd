"""Character-window segmentation with break-point preference.

Splits normalized text into chunks of at most ``chunk_size`` characters.

The cut for each window is chosen in priority order:

1. **Sentence boundary** -- the last period or newline whose cut point lies
   strictly inside the tail 20% of the window.
2. **Word boundary** -- the last whitespace in the window, so no chunk ends
   mid-word.
3. **Raw boundary** -- the window end, for text with no whitespace at all.

Two overlap modes exist, one per owner kind:

* ``PLAIN`` (documents) -- the next window starts ``overlap`` characters
  before the previous cut, moved forward to a word start.  Each chunk
  stands alone.
* ``CONTEXT_STITCHED`` (knowledge-bot items) -- windows are contiguous and
  every chunk after the first is prefixed with ``"..."``, the tail of the
  preceding text, and a blank line.  The whole prefix is at most
  ``overlap`` characters.

The window start strictly increases every iteration, so segmentation always
terminates.
"""

from __future__ import annotations

from enum import Enum

import structlog

from docrag.models.rag import OwnerKind

logger = structlog.get_logger(logger_name=__name__)

# Fraction of the window before which a sentence break is not accepted.
_BREAK_ZONE = 0.8
_SENTENCE_BREAKS = (".", "\n")
_STITCH_LEAD = "..."
_STITCH_TAIL = "\n\n"


class SegmentationMode(str, Enum):
    PLAIN = "plain"
    CONTEXT_STITCHED = "context_stitched"


def mode_for(owner_kind: OwnerKind) -> SegmentationMode:
    """Return the one segmentation mode used for *owner_kind*."""
    if owner_kind is OwnerKind.KNOWLEDGE_BOT:
        return SegmentationMode.CONTEXT_STITCHED
    return SegmentationMode.PLAIN


class TextSegmenter:
    """Splits text into overlapping character windows.

    Parameters
    ----------
    chunk_size:
        Default target maximum characters per chunk (default 1000).
    overlap:
        Default overlap in characters (default 200).  Must be smaller than
        *chunk_size*.
    """

    def __init__(self, chunk_size: int = 1000, overlap: int = 200) -> None:
        _check_params(chunk_size, overlap)
        self._chunk_size = chunk_size
        self._overlap = overlap

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def overlap(self) -> int:
        return self._overlap

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def segment(
        self,
        text: str,
        target_size: int | None = None,
        overlap: int | None = None,
        mode: SegmentationMode = SegmentationMode.PLAIN,
    ) -> list[str]:
        """Split *text* into an ordered list of chunk strings.

        Parameters
        ----------
        text:
            Normalized text (see :func:`docrag.utils.text_normalizer.normalize_text`).
        target_size:
            Maximum characters per chunk body; defaults to the instance value.
        overlap:
            Overlap width in characters; defaults to the instance value.
        mode:
            Overlap strategy, see module docstring.

        Returns
        -------
        list[str]
            ``[]`` for empty or whitespace-only input; ``[text.strip()]``
            when the text fits in one window.

        Raises
        ------
        ValueError
            If ``target_size < 1``, ``overlap < 0`` or ``overlap >= target_size``.
        """
        size = self._chunk_size if target_size is None else target_size
        width = self._overlap if overlap is None else overlap
        _check_params(size, width)

        if not text or not text.strip():
            return []
        if len(text) <= size:
            return [text.strip()]

        if mode is SegmentationMode.CONTEXT_STITCHED:
            chunks = self._segment_stitched(text, size, width)
        else:
            chunks = self._segment_plain(text, size, width)

        logger.debug(
            "text_segmented",
            mode=mode.value,
            text_length=len(text),
            chunk_count=len(chunks),
        )
        return chunks

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _segment_plain(self, text: str, size: int, overlap: int) -> list[str]:
        chunks: list[str] = []
        start = 0
        length = len(text)
        while start < length:
            cut = _find_cut(text, start, size)
            piece = text[start:cut].strip()
            if piece:
                chunks.append(piece)
            if cut >= length:
                break
            next_start = _word_start_after(text, cut - overlap, cut)
            # The start index strictly increases.
            if next_start <= start:
                next_start = _word_start_after(text, start + 1, cut)
            start = next_start
        return chunks

    def _segment_stitched(self, text: str, size: int, overlap: int) -> list[str]:
        chunks: list[str] = []
        start = 0
        length = len(text)
        while start < length:
            cut = _find_cut(text, start, size)
            core = text[start:cut].strip()
            if core:
                prefix = _stitch_prefix(text, start, overlap) if chunks else ""
                chunks.append(prefix + core)
            if cut >= length:
                break
            start = cut
        return chunks


def _check_params(size: int, overlap: int) -> None:
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    if overlap < 0:
        raise ValueError(f"overlap must be non-negative, got {overlap}")
    if overlap >= size:
        raise ValueError(f"overlap ({overlap}) must be smaller than chunk size ({size})")


def _find_cut(text: str, start: int, size: int) -> int:
    """Return the exclusive end index of the window starting at *start*."""
    end = min(start + size, len(text))
    if end >= len(text):
        return len(text)

    breakpoint_ = max(text.rfind(mark, start, end) for mark in _SENTENCE_BREAKS)
    if breakpoint_ >= 0 and breakpoint_ + 1 > start + size * _BREAK_ZONE:
        return breakpoint_ + 1

    if text[end].isspace() or text[end - 1].isspace():
        return end

    for pos in range(end - 1, start, -1):
        if text[pos].isspace():
            return pos
    return end


def _word_start_after(text: str, candidate: int, limit: int) -> int:
    """Move *candidate* forward to the start of a word, not past *limit*."""
    candidate = max(candidate, 0)
    if candidate == 0 or text[candidate - 1].isspace():
        return candidate
    for pos in range(candidate, limit):
        if text[pos].isspace():
            return pos + 1
    return limit


def _stitch_prefix(text: str, start: int, overlap: int) -> str:
    """Build ``"..." + context + "\\n\\n"`` from the text before *start*.

    The context is the raw tail preceding *start*, trimmed to a word start,
    and the whole prefix never exceeds *overlap* characters.  Returns ``""``
    when the budget leaves no room for context.
    """
    budget = overlap - len(_STITCH_LEAD) - len(_STITCH_TAIL)
    if budget <= 0:
        return ""
    window_start = max(0, start - budget)
    context_start = _word_start_after(text, window_start, start)
    context = text[context_start:start].strip()
    if not context:
        return ""
    return f"{_STITCH_LEAD}{context}{_STITCH_TAIL}"
