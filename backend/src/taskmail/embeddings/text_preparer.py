"""
Text preparation for embedding.

Builds the embedding input for an entity from its primary text
(subject/title) and secondary text (body/description), within a hard
character budget.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from taskmail.db.models import EntityType, table_for

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 10000
TRUNCATION_MARKER = "[content truncated]"
SECTION_SEPARATOR = "\n\n"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_WS = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


class PreparableEntity(Protocol):
    """Anything exposing the two text fields and its entity type."""

    entity_type: EntityType
    primary_text: str
    secondary_text: str


def normalize_text(text: str | None) -> str:
    """Strip control characters and collapse whitespace runs."""
    if not text:
        return ""
    text = _CONTROL_CHARS.sub("", text)
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _BLANK_LINES.sub(SECTION_SEPARATOR, text)
    return text.strip()


class TextPreparer:
    """
    Assemble `"<Label>: <primary>\\n\\n<secondary>"` within `max_chars`.

    When the budget is exceeded the primary part is kept whole, the secondary
    part is cut from the end and TRUNCATION_MARKER is appended once. An empty
    string means there is nothing to embed.
    """

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS) -> None:
        if max_chars <= len(TRUNCATION_MARKER) + len(SECTION_SEPARATOR):
            raise ValueError("max_chars is too small to hold the truncation marker")
        self.max_chars = max_chars

    def prepare(self, entity: PreparableEntity) -> str:
        primary = normalize_text(entity.primary_text)
        secondary = normalize_text(entity.secondary_text)
        if not primary and not secondary:
            return ""

        label = table_for(entity.entity_type).primary_label
        head = f"{label}: {primary}" if primary else ""
        combined = SECTION_SEPARATOR.join(part for part in (head, secondary) if part)
        if len(combined) <= self.max_chars:
            return combined

        return self._truncate(head, secondary)

    def _truncate(self, head: str, secondary: str) -> str:
        suffix = SECTION_SEPARATOR + TRUNCATION_MARKER
        secondary = secondary.replace(TRUNCATION_MARKER, "").strip()
        prefix = head + SECTION_SEPARATOR if head else ""
        room = self.max_chars - len(prefix) - len(suffix)

        if not secondary:
            # Nothing was dropped; the primary is never cut.
            return head
        if room <= 0:
            logger.debug("Primary text exceeds budget; dropping secondary text")
            return head + suffix

        kept = secondary[:room].rstrip()
        logger.debug(
            "Truncated secondary text from %d to %d chars", len(secondary), len(kept)
        )
        return prefix + kept + suffix if kept else head + suffix
