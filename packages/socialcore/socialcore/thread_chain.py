from __future__ import annotations

from .errors import ChainTooLongError

SOFT_FLOOR_RATIO = 0.55
SENTENCE_TERMINATORS = (". ", "! ", "? ")


def _find_cut(window: str, limit: int, soft_floor: int) -> int:
    cut = window.rfind("\n")
    if cut >= soft_floor:
        return cut

    sentence_end = max(window.rfind(terminator) for terminator in SENTENCE_TERMINATORS)
    if sentence_end >= soft_floor:
        return sentence_end + 1

    cut = window.rfind(" ")
    if cut >= soft_floor:
        return cut

    return limit


def split_into_chain(text: str | None, limit: int, max_parts: int) -> list[str]:
    """Split text into reply-chain parts of at most ``limit`` characters.

    Breaks prefer a newline, then a sentence end, then a space, all at or past
    the soft floor, before falling back to a hard cut at ``limit``.
    """
    if limit < 1:
        raise ValueError("limit must be positive")
    if max_parts < 2:
        raise ValueError("max_parts must be at least 2")

    remaining = (text or "").strip()
    if not remaining:
        return []
    if len(remaining) <= limit:
        return [remaining]

    soft_floor = int(limit * SOFT_FLOOR_RATIO)
    parts: list[str] = []
    while len(remaining) > limit and len(parts) < max_parts - 1:
        window = remaining[: limit + 1]
        cut = _find_cut(window, limit, soft_floor)
        part = remaining[:cut].strip()
        if part:
            parts.append(part)
        remaining = remaining[cut:].strip()

    if len(remaining) > limit:
        raise ChainTooLongError(
            f"Text needs more than {max_parts} posts of {limit} characters. Shorten it or raise the chain limit.",
            platform="threads",
        )
    if remaining:
        parts.append(remaining)
    return parts


def normalize_chain_parts(parts: list[str] | tuple[str, ...] | None) -> list[str]:
    return [part.replace("\r", "").strip() for part in parts or [] if part and part.strip()]
