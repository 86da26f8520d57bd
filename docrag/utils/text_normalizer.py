"""Whitespace normalization applied to raw text before segmentation.

Segment offsets are computed on the canonical string returned here, so
every ingestion path calls :func:`normalize_text` first.
"""

from __future__ import annotations

import re

_LINE_ENDINGS = re.compile(r"\r\n?")
_WHITESPACE_RUN = re.compile(r"\s+")


def _collapse_run(match: re.Match[str]) -> str:
    newlines = match.group(0).count("\n")
    if newlines == 0:
        return " "
    if newlines == 1:
        return "\n"
    return "\n\n"


def normalize_text(text: str) -> str:
    """Canonicalise whitespace in *text*.

    - ``\\r\\n`` and ``\\r`` become ``\\n``.
    - A whitespace run without a newline becomes one space.
    - A run containing exactly one newline becomes ``\\n``.
    - A run containing two or more newlines becomes ``\\n\\n``
      (a single blank line, so paragraph breaks survive).
    - Leading and trailing whitespace is removed.

    Total: never raises for ``str`` input.

    >>> normalize_text("Hello   world.\\n\\n\\n\\nBye")
    'Hello world.\\n\\nBye'
    """
    if not text:
        return ""
    canonical = _LINE_ENDINGS.sub("\n", text)
    return _WHITESPACE_RUN.sub(_collapse_run, canonical).strip()
