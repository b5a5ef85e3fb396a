from __future__ import annotations

"""Split crawled page text into titled blocks and merge undersized ones."""

import logging
import re
from typing import List, Optional

from .models import ContentBlock
from .utils import collapse_whitespace

logger = logging.getLogger("leadflow.segmenter")

SECTION_RE = re.compile(r"\[SECTION\s+(\d+)\]\s*([^\n]*)\n?([\s\S]*?)(?=\[SECTION\s+\d+\]|$)")

DEFAULT_MIN_CHARS = 300
DEFAULT_MAX_BLOCKS = 10
FALLBACK_TITLE = "General Content"


def parse_section_blocks(text: str) -> List[ContentBlock]:
    """Purpose: Scan `[SECTION n] title` markers into ordered title/body blocks.
    Inputs/Outputs: Input is raw crawl text; output is a list of ContentBlock.
    Side Effects / State: None; pure function.
    Dependencies: SECTION_RE.
    Failure Modes: Text without markers yields an empty list.
    If Removed: Enrichment has no section structure to build questions from.
    Testing Notes: Blocks with an empty title or body are dropped.
    """
    blocks: List[ContentBlock] = []
    for match in SECTION_RE.finditer(text or ""):
        title = (match.group(2) or "").strip()
        body = (match.group(3) or "").strip()
        if not title or not body:
            continue
        blocks.append(ContentBlock(title=title, body=body))
    return blocks


def _block_size(block: ContentBlock) -> int:
    return len(collapse_whitespace(block.body))


def _combined_title(first: str, second: str) -> str:
    return first or second


def merge_small_blocks(
    blocks: List[ContentBlock],
    min_chars: int = DEFAULT_MIN_CHARS,
    max_blocks: int = DEFAULT_MAX_BLOCKS,
) -> List[ContentBlock]:
    """Purpose: Fold undersized blocks into neighbours and cap the block count.
    Inputs/Outputs: Inputs are blocks, the minimum body size, and the block cap;
        output is a new list of ContentBlock.
    Side Effects / State: None; input blocks are not mutated.
    Dependencies: collapse_whitespace for size measurement.
    Failure Modes: None; an empty list returns an empty list.
    If Removed: Tiny sections each cost a full round of LLM generation.
    Testing Notes: A list whose blocks all meet min_chars comes back unchanged.
    """
    # Forward pass: a small block is carried into the next one; the earlier title wins.
    merged: List[ContentBlock] = []
    pending: Optional[ContentBlock] = None
    for block in blocks:
        if pending is not None:
            block = ContentBlock(
                title=_combined_title(pending.title, block.title),
                body=f"{pending.body}\n\n{block.body}",
            )
            pending = None
        if _block_size(block) < min_chars:
            pending = block
            continue
        merged.append(block)

    # A trailing small block has no successor, so it folds back into the previous one.
    if pending is not None:
        if merged:
            last = merged[-1]
            merged[-1] = ContentBlock(
                title=_combined_title(last.title, pending.title),
                body=f"{last.body}\n\n{pending.body}",
            )
        else:
            merged.append(pending)

    if max_blocks > 0 and len(merged) > max_blocks:
        head = merged[: max_blocks - 1]
        tail = merged[max_blocks - 1 :]
        capped = ContentBlock(
            title=tail[0].title,
            body="\n\n".join(block.body for block in tail),
        )
        logger.info("step=merge capped_blocks=%s total_blocks=%s", max_blocks, len(merged))
        merged = head + [capped]
    return merged


def segment_text(
    text: str,
    min_chars: int = DEFAULT_MIN_CHARS,
    max_blocks: int = DEFAULT_MAX_BLOCKS,
) -> List[ContentBlock]:
    """Parse then merge; text with no usable markers becomes one unsegmented block."""
    blocks = merge_small_blocks(parse_section_blocks(text), min_chars=min_chars, max_blocks=max_blocks)
    if not blocks and text and text.strip():
        logger.info("step=segment markers=none fallback=single_block")
        blocks = [ContentBlock(title=FALLBACK_TITLE, body=text.strip())]
    return blocks
