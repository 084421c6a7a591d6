"""
Helpers for text files that contain tool-owned blocks between marker lines.

A block starts at a line matching a begin pattern (which captures the block
id) and ends at the next line containing the matching end marker. Text
outside blocks belongs to the user and is returned unchanged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agentmgr.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Segment:
    """A run of lines: user text (``block_id`` None) or one marked block."""

    text: str
    block_id: str | None = None


def split_segments(
    content: str,
    begin: re.Pattern[str],
    end_marker: str,
) -> list[Segment]:
    """
    Split ``content`` into user text and marked blocks.

    Args:
        content: File content.
        begin: Pattern searched in each line; group 1 is the block id.
        end_marker: Format string with ``{id}`` for the closing marker.

    Returns:
        Segments in file order; concatenating their text gives ``content``.
        A begin marker without its end marker is kept as user text.
    """
    lines = content.splitlines(keepends=True)
    segments: list[Segment] = []
    text: list[str] = []
    i = 0

    while i < len(lines):
        match = begin.search(lines[i])
        if match:
            block_id = match.group(1)
            end = end_marker.format(id=block_id)
            j = i + 1
            while j < len(lines) and end not in lines[j]:
                j += 1
            if j < len(lines):
                if text:
                    segments.append(Segment("".join(text)))
                    text = []
                segments.append(Segment("".join(lines[i : j + 1]), block_id))
                i = j + 1
                continue
            logger.warning("Unterminated marker block", extra={"block_id": block_id})
        text.append(lines[i])
        i += 1

    if text:
        segments.append(Segment("".join(text)))
    return segments


def join_segments(segments: list[Segment]) -> str:
    """Concatenate segment text."""
    return "".join(s.text for s in segments)


def collapse_blank_lines(content: str) -> str:
    """Reduce runs of three or more newlines to one blank line."""
    return re.sub(r"\n{3,}", "\n\n", content)


def strip_block(
    content: str,
    block_id: str,
    begin: re.Pattern[str],
    end_marker: str,
) -> tuple[str, bool]:
    """
    Remove the block ``block_id`` from ``content``.

    Returns:
        The new content and whether a block was removed.
    """
    segments = split_segments(content, begin, end_marker)
    kept = [s for s in segments if s.block_id != block_id]
    if len(kept) == len(segments):
        return content, False
    return collapse_blank_lines(join_segments(kept)), True
