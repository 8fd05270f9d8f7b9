from __future__ import annotations

from typing import Sequence

from .models import DiffLine, LinePair


def pair_indexes(types: Sequence[str]) -> list[tuple[int | None, int | None]]:
    """Pair line positions for side-by-side display.

    Context lines pair with themselves. A run of deleted lines is zipped
    positionally with the run of added lines that immediately follows it;
    the shorter side is padded with None. An added line without a preceding
    deleted run gets an empty left side. Unknown line types are skipped.
    """

    pairs: list[tuple[int | None, int | None]] = []
    index = 0
    total = len(types)
    while index < total:
        kind = types[index]
        if kind == "context":
            pairs.append((index, index))
            index += 1
            continue
        if kind == "deleted":
            deleted_start = index
            while index < total and types[index] == "deleted":
                index += 1
            deleted = list(range(deleted_start, index))
            added_start = index
            while index < total and types[index] == "added":
                index += 1
            added = list(range(added_start, index))
            for offset in range(max(len(deleted), len(added))):
                old_index = deleted[offset] if offset < len(deleted) else None
                new_index = added[offset] if offset < len(added) else None
                pairs.append((old_index, new_index))
            continue
        if kind == "added":
            pairs.append((None, index))
        index += 1
    return pairs


def pair_lines(lines: Sequence[DiffLine]) -> list[LinePair]:
    pairs: list[LinePair] = []
    for old_index, new_index in pair_indexes([line.type for line in lines]):
        pairs.append(
            LinePair(
                old_line=lines[old_index] if old_index is not None else None,
                new_line=lines[new_index] if new_index is not None else None,
            )
        )
    return pairs
