"""Resolve inline ``[n]`` answer markers to their source fragments."""

from __future__ import annotations

import re
from dataclasses import dataclass

from newsrag.models import Citation, PromptContext
from newsrag.services.context import truncate

_MARKER = re.compile(r"\[(\d+)\]")
_MARKER_WITH_SPACING = re.compile(r"(?P<lead>[ \t]*)\[(?P<index>\d+)\](?P<trail>[ \t]*)")
_CLOSERS = ".,;:!?)\n"


@dataclass(frozen=True)
class FormattedCitations:
    answer: str
    citations: tuple[Citation, ...]
    dropped_markers: tuple[int, ...] = ()


class CitationFormatter:
    def __init__(self, preview_chars: int = 200) -> None:
        self._preview_chars = preview_chars

    def format(self, answer: str, context: PromptContext) -> FormattedCitations:
        citations: list[Citation] = []
        seen: set[int] = set()
        dropped: list[int] = []
        for match in _MARKER.finditer(answer):
            index = int(match.group(1))
            if index in seen or index in dropped:
                continue
            fragment = context.fragments_by_index.get(index)
            if fragment is None:
                dropped.append(index)
                continue
            seen.add(index)
            citations.append(
                Citation(
                    citation_index=index,
                    fragment=fragment,
                    preview=truncate(fragment.text, self._preview_chars),
                )
            )
        cleaned = self._strip_markers(answer, set(dropped)) if dropped else answer
        return FormattedCitations(answer=cleaned, citations=tuple(citations), dropped_markers=tuple(dropped))

    @staticmethod
    def _strip_markers(answer: str, indexes: set[int]) -> str:
        # Only the whitespace touching a removed marker changes; the rest of the
        # answer (indentation, list layout) is left as the model wrote it.
        def drop(match: re.Match[str]) -> str:
            if int(match.group("index")) not in indexes:
                return match.group(0)
            start, end = match.span()
            if start == 0 or answer[start - 1] == "\n":
                return match.group("lead")
            following = answer[end : end + 1]
            spaced = match.group("lead") or match.group("trail")
            return " " if spaced and following and following not in _CLOSERS else ""

        return _MARKER_WITH_SPACING.sub(drop, answer)
