"""Token accounting summed across batch result items."""

from __future__ import annotations

import typing as t

Usage = dict[str, t.Any]


def _is_number(value: t.Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _merge_detail_list(existing: t.Any, incoming: list[t.Any]) -> t.Any:
    """Sum per-modality detail lists such as ``[{"modality": "TEXT", "tokenCount": 4}]``."""
    if existing is None:
        existing = []
    if not isinstance(existing, list):
        return existing
    by_modality = {
        entry.get("modality"): entry
        for entry in existing
        if isinstance(entry, dict) and "modality" in entry
    }
    for detail in incoming:
        if not isinstance(detail, dict) or "modality" not in detail:
            continue
        target = by_modality.get(detail["modality"])
        if target is None:
            target = {"modality": detail["modality"]}
            by_modality[detail["modality"]] = target
            existing.append(target)
        merge_usage(target, {k: v for k, v in detail.items() if k != "modality"})
    return existing


def merge_usage(total: Usage, usage: t.Mapping[str, t.Any]) -> Usage:
    """
    Add ``usage`` into ``total`` in place.

    Numbers are summed per key, nested objects are merged recursively and
    per-modality lists are summed per modality. Strings, booleans and
    ``None`` carry no counts and are skipped. A key whose shape differs
    from what ``total`` already holds is left alone.

    Parameters
    ----------
    total : dict[str, typing.Any]
        Running aggregate, mutated.
    usage : typing.Mapping[str, typing.Any]
        One item's usage.

    Returns
    -------
    dict[str, typing.Any]
        ``total``.
    """
    for key, value in usage.items():
        if _is_number(value):
            current = total.get(key, 0)
            if _is_number(current):
                total[key] = current + value
        elif isinstance(value, t.Mapping):
            nested = total.setdefault(key, {})
            if isinstance(nested, dict):
                merge_usage(nested, value)
        elif isinstance(value, list):
            merged = _merge_detail_list(total.get(key), value)
            if merged:
                total[key] = merged
    return total


def aggregate_usage(usages: t.Iterable[t.Mapping[str, t.Any] | None]) -> Usage:
    """Sum any number of usage objects into one; no input gives ``{}``."""
    total: Usage = {}
    for usage in usages:
        if usage:
            merge_usage(total, usage)
    return total
