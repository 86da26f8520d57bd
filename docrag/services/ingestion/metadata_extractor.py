"""Document-level metadata extraction with pattern recognizers.

Runs once per ingestion over the normalized text and produces a
:class:`~docrag.models.rag.DocumentMetadata` that is copied onto every
chunk of the owner.  Deterministic and total: the same text always yields
the same metadata, and no input raises.

Recognizers:

* emails -- ``local@domain.tld``
* phones -- three-three-four digit groups with optional ``-`` or ``.``
* urls -- ``http://`` and ``https://`` up to the next whitespace
* dates -- ``d/m/yy`` style tokens with ``/`` or ``-`` separators
* sections -- known heading vocabulary (English and Korean synonyms) at
  the start of a line, recorded under a canonical name
"""

from __future__ import annotations

import re

import structlog

from docrag.models.rag import DocumentMetadata

logger = structlog.get_logger(logger_name=__name__)

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_URL = re.compile(r"https?://[^\s]+")
_DATE = re.compile(r"\b\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}\b")

# Canonical section name -> heading synonyms.  A heading counts when it
# opens a line, optionally after a numeric label such as "1." or "II)".
_SECTION_SYNONYMS: dict[str, tuple[str, ...]] = {
    "table_of_contents": ("table of contents", "contents", "목차"),
    "summary": ("summary", "abstract", "executive summary", "요약", "개요"),
    "introduction": ("introduction", "서론", "소개"),
    "conclusion": ("conclusion", "conclusions", "결론"),
    "references": ("references", "bibliography", "참고문헌", "참고 문헌"),
    "appendix": ("appendix", "appendices", "부록"),
}

_HEADING_LABEL = r"^[ \t]*(?:(?:\d+|[IVXLC]+)[.)][ \t]*)?"


def _heading_pattern(synonyms: tuple[str, ...]) -> re.Pattern[str]:
    # Longest first so "executive summary" wins over "summary".
    alternatives = "|".join(re.escape(s) for s in sorted(synonyms, key=len, reverse=True))
    return re.compile(rf"{_HEADING_LABEL}(?:{alternatives})(?![^\W\d_])", re.IGNORECASE | re.MULTILINE)


_SECTION_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (name, _heading_pattern(synonyms)) for name, synonyms in _SECTION_SYNONYMS.items()
]


class MetadataExtractor:
    """Extracts counts, contact tokens, dates, and section headings from text."""

    def extract(self, text: str, source_name: str = "") -> DocumentMetadata:
        """Return the :class:`DocumentMetadata` for *text*.

        Parameters
        ----------
        text:
            Normalized document text.
        source_name:
            Original file or item name; stored in ``extra["source_name"]``
            when non-empty.

        Returns
        -------
        DocumentMetadata
            Optional categories are ``None`` when nothing matched.
        """
        text = text or ""
        extra: dict[str, str] = {"source_name": source_name} if source_name else {}

        metadata = DocumentMetadata(
            char_count=len(text),
            word_count=len(text.split()),
            line_count=sum(1 for line in text.split("\n") if line.strip()),
            emails=_unique_matches(_EMAIL, text),
            phones=_unique_matches(_PHONE, text),
            urls=_unique_matches(_URL, text),
            dates=_unique_matches(_DATE, text),
            sections=self._find_sections(text),
            extra=extra,
        )
        logger.debug(
            "metadata_extracted",
            source_name=source_name,
            char_count=metadata.char_count,
            sections=metadata.sections,
        )
        return metadata

    @staticmethod
    def _find_sections(text: str) -> list[str] | None:
        found = [(m.start(), name) for name, pattern in _SECTION_PATTERNS if (m := pattern.search(text))]
        if not found:
            return None
        found.sort()
        return [name for _, name in found]


def _unique_matches(pattern: re.Pattern[str], text: str) -> list[str] | None:
    """All matches of *pattern* in first-seen order without repeats, or ``None``."""
    seen: dict[str, None] = {}
    for match in pattern.finditer(text):
        seen.setdefault(match.group(0), None)
    return list(seen) or None
