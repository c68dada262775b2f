from __future__ import annotations

import re
import typing as t
from dataclasses import dataclass

from fanbatch.models import ParsedItem

SINGLE_CONVERSATION_SEPARATOR = "__"
NO_RESULT_MESSAGE = "No result returned for this request"

_REQUEST_KEY_RE = re.compile(r"^request-(\d+)$")
_ERROR_LABELS = {
    "expired": "Expired",
    "canceled": "Canceled",
}


@dataclass(frozen=True)
class AlignedResult:
    """One rendered block: the key shown, the prompt it answers and the item, if any."""

    key: str
    prompt: str
    item: ParsedItem | None


def key_position(key: str | None) -> int | None:
    """Return ``n`` for a ``request-n`` key, ``None`` otherwise."""
    if not key:
        return None
    match = _REQUEST_KEY_RE.match(key)
    return int(match.group(1)) if match else None


def _prompt_at(prompts: t.Sequence[str], position: int) -> str:
    if 1 <= position <= len(prompts):
        return prompts[position - 1]
    return f"(Prompt {position})"


def align_results(
    items: t.Sequence[ParsedItem],
    prompts: t.Sequence[str],
    *,
    single_conversation: bool = False,
) -> list[AlignedResult]:
    """
    Line result items up with the prompts they answer.

    Keyed items go to the prompt their ``request-n`` key names. Items without
    a usable key fill the free slot at their arrival position. Prompts left
    without an item get an empty slot, and items that fit nowhere follow in
    arrival order. Malformed lines come last.

    Parameters
    ----------
    items : typing.Sequence[ParsedItem]
        Parsed items in arrival order.
    prompts : typing.Sequence[str]
        Original prompts, the canonical order.
    single_conversation : bool, optional
        Attribute results to the joined prompt set instead.

    Returns
    -------
    list[AlignedResult]
        Blocks in presentation order.
    """
    valid = [item for item in items if not item.is_parse_error]
    broken = [item for item in items if item.is_parse_error]

    aligned: list[AlignedResult] = []
    if single_conversation:
        joined = SINGLE_CONVERSATION_SEPARATOR.join(prompts)
        if not valid:
            aligned.append(AlignedResult(key="request-1", prompt=joined, item=None))
        for index, item in enumerate(valid, start=1):
            aligned.append(
                AlignedResult(key=item.key or f"(Index {index})", prompt=joined, item=item)
            )
    else:
        slots: list[ParsedItem | None] = [None] * len(prompts)
        keyless: list[tuple[int, ParsedItem]] = []
        leftovers: list[tuple[int, ParsedItem]] = []
        for arrival, item in enumerate(valid, start=1):
            position = key_position(item.key)
            if position is None:
                keyless.append((arrival, item))
            elif 1 <= position <= len(slots) and slots[position - 1] is None:
                slots[position - 1] = item
            else:
                leftovers.append((position, item))
        for arrival, item in keyless:
            if arrival <= len(slots) and slots[arrival - 1] is None:
                slots[arrival - 1] = item
            else:
                leftovers.append((arrival, item))

        for index, (prompt, item) in enumerate(zip(prompts, slots), start=1):
            key = item.key if item is not None and item.key else f"request-{index}"
            aligned.append(AlignedResult(key=key, prompt=prompt, item=item))
        for position, item in leftovers:
            aligned.append(
                AlignedResult(
                    key=item.key or f"(Index {position})",
                    prompt=_prompt_at(prompts, position),
                    item=item,
                )
            )

    for item in broken:
        aligned.append(
            AlignedResult(key=f"(Line {item.line_number})", prompt="(unknown)", item=item)
        )
    return aligned


def render_block(result: AlignedResult) -> str:
    lines = [f"--- Request Key: {result.key} ---", f"Prompt: {result.prompt}"]
    item = result.item
    if item is None:
        lines.append(f"Error: {NO_RESULT_MESSAGE}")
    elif item.error is not None:
        label = _ERROR_LABELS.get(item.error.kind, "Error")
        lines.append(f"{label}: {item.error.render()}")
    else:
        content = item.content if item.content is not None else "[No response content]"
        lines.append(f"Response: {content}")
    return "\n".join(lines)


def render_results(
    items: t.Sequence[ParsedItem],
    prompts: t.Sequence[str],
    *,
    single_conversation: bool = False,
) -> str:
    """Render aligned result blocks separated by a blank line."""
    aligned = align_results(items, prompts, single_conversation=single_conversation)
    return "\n\n".join(render_block(result) for result in aligned)
