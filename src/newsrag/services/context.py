"""Context assembly: turn retrieved fragments into a bounded, numbered prompt block."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from newsrag.models import Fragment, PromptContext, rank_key

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ContextConfig:
    """Configuration for context rendering."""

    max_context_chars: int = 12000
    max_excerpt_chars: int = 1500
    separator: str = "\n\n"
    ellipsis: str = "..."
    unknown_publisher: str = "Unknown publisher"
    unknown_date: str = "unknown date"


class ContextAssembler:
    """Dedupes, orders, truncates and renders fragments as ``[n] publisher (date): excerpt``."""

    def __init__(self, config: ContextConfig | None = None) -> None:
        self._config = config or ContextConfig()

    def assemble(self, fragments: Sequence[Fragment], max_context_chars: int | None = None) -> PromptContext:
        budget = self._config.max_context_chars if max_context_chars is None else max_context_chars
        ordered = sorted(fragments, key=rank_key)
        unique = self._dedupe(ordered)

        entries: list[str] = []
        by_index: dict[int, Fragment] = {}
        used = 0
        for fragment in unique:
            index = len(entries) + 1
            entry = self.render_entry(index, fragment)
            cost = len(entry) + (len(self._config.separator) if entries else 0)
            if used + cost > budget:
                break
            entries.append(entry)
            by_index[index] = fragment
            used += cost

        return PromptContext(
            text=self._config.separator.join(entries),
            fragments_by_index=by_index,
            dropped=len(fragments) - len(by_index),
        )

    def render_entry(self, index: int, fragment: Fragment) -> str:
        publisher = (fragment.publisher or "").strip() or self._config.unknown_publisher
        date = fragment.published_at.date().isoformat() if fragment.published_at else self._config.unknown_date
        return f"[{index}] {publisher} ({date}): {self.excerpt(fragment.text)}"

    def excerpt(self, text: str) -> str:
        return truncate(text, self._config.max_excerpt_chars, ellipsis=self._config.ellipsis)

    @staticmethod
    def _dedupe(fragments: Sequence[Fragment]) -> list[Fragment]:
        seen_regions: set[tuple[str, int]] = set()
        seen_bodies: set[tuple[str, str]] = set()
        unique: list[Fragment] = []
        for fragment in fragments:
            region = (fragment.document_id, fragment.ordinal)
            body = (fragment.document_id, collapse_whitespace(fragment.text).lower())
            if region in seen_regions or body in seen_bodies:
                continue
            seen_regions.add(region)
            seen_bodies.add(body)
            unique.append(fragment)
        return unique


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def truncate(text: str, limit: int, *, ellipsis: str = "...") -> str:
    """Collapse whitespace and cut to ``limit`` characters, preferring a word boundary."""

    flat = collapse_whitespace(text)
    if len(flat) <= limit:
        return flat
    room = max(0, limit - len(ellipsis))
    cut = flat[:room]
    boundary = cut.rfind(" ")
    if boundary > room // 2:
        cut = cut[:boundary]
    return cut.rstrip() + ellipsis
