from __future__ import annotations

import html
import re
from typing import Iterable

HTML_TAG_RE = re.compile(r"<[^>]+>")
SPACE_RUN_RE = re.compile(r" {2,}")
LINE_BREAKS = ("\n", "\r", "\t")
PLACEHOLDER_TOKENS = ("[link]", "[comments]")
MIN_DESCRIPTION_LENGTH = 40
MAX_DISPLAY_CODEPOINT = 255


def harvest(raw: str) -> str:
    """Reduce one raw summary blob to a single clean line, or "" if unusable."""
    text = html.unescape(raw)
    text = HTML_TAG_RE.sub("", text).strip()
    for separator in LINE_BREAKS:
        text = text.split(separator, 1)[0].strip()
    # Scripts outside Latin-1 render badly in most terminal fonts.
    if any(ord(char) > MAX_DISPLAY_CODEPOINT for char in text):
        return ""
    for token in PLACEHOLDER_TOKENS:
        text = text.replace(token, " ")
    text = SPACE_RUN_RE.sub(" ", text).strip()
    if len(text) < MIN_DESCRIPTION_LENGTH:
        return ""
    return text


def extract_description(candidates: Iterable[str | None]) -> str:
    for candidate in candidates:
        if not candidate:
            continue
        extracted = harvest(candidate)
        if extracted:
            return extracted
    return ""
