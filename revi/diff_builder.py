from __future__ import annotations

import hashlib
import json
import re
from dataclasses import replace
from difflib import SequenceMatcher
from typing import Any, Callable, Sequence

from rapidfuzz import fuzz

from .errors import DiffComputationFailed
from .line_pairing import pair_indexes
from .models import DiffLine, DiffStats, FileDiff, HighlightSpan, Hunk

HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<context>.*)$"
)
WORD_TOKEN_RE = re.compile(r"\w+|\s+|[^\w\s]")

WORD_ADDED_SCOPE = "word-added"
WORD_DELETED_SCOPE = "word-deleted"
# Unrelated deleted/added lines stay without intraline highlight.
MIN_WORD_HIGHLIGHT_SIMILARITY = 0.20

Highlighter = Callable[[str, str], Sequence[HighlightSpan]]


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(value: Any) -> str:
    payload = canonical_json(value).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def compute_content_hash(hunks: Sequence[Hunk]) -> str:
    """Digest over hunk headers and (type, content) of every line, in order.

    Line numbers and highlight spans are not part of the identity: they are
    implied by the header or are presentation only.
    """

    hash_input = [
        [hunk.header, [[line.type, line.content] for line in hunk.lines]]
        for hunk in hunks
    ]
    return sha256_hex(hash_input)


def split_content_lines(content: str) -> list[str]:
    if not content:
        return []
    lines = content.split("\n")
    if content.endswith("\n"):
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class _HunkBuilder:
    def __init__(self, header: str, old_start: int, old_lines: int, new_start: int, new_lines: int) -> None:
        self.header = header
        self.old_start = old_start
        self.old_lines = old_lines
        self.new_start = new_start
        self.new_lines = new_lines
        self.lines: list[DiffLine] = []
        self.old_cursor = old_start
        self.new_cursor = new_start
        self.old_seen = 0
        self.new_seen = 0

    @property
    def complete(self) -> bool:
        return self.old_seen >= self.old_lines and self.new_seen >= self.new_lines

    def add(self, line: str) -> None:
        prefix = line[:1]
        if prefix == "+":
            self.lines.append(DiffLine(type="added", content=line[1:], new_line_num=self.new_cursor))
            self.new_cursor += 1
            self.new_seen += 1
        elif prefix == "-":
            self.lines.append(DiffLine(type="deleted", content=line[1:], old_line_num=self.old_cursor))
            self.old_cursor += 1
            self.old_seen += 1
        elif prefix == " " or line == "":
            self.lines.append(
                DiffLine(
                    type="context",
                    content=line[1:],
                    old_line_num=self.old_cursor,
                    new_line_num=self.new_cursor,
                )
            )
            self.old_cursor += 1
            self.new_cursor += 1
            self.old_seen += 1
            self.new_seen += 1
        else:
            raise DiffComputationFailed(f"Unexpected line in hunk {self.header!r}: {line!r}")

    def build(self) -> Hunk:
        if self.old_seen != self.old_lines or self.new_seen != self.new_lines:
            raise DiffComputationFailed(
                f"Truncated hunk {self.header!r}: expected -{self.old_lines}/+{self.new_lines} lines, "
                f"got -{self.old_seen}/+{self.new_seen}"
            )
        return Hunk(
            header=self.header,
            old_start=self.old_start,
            old_lines=self.old_lines,
            new_start=self.new_start,
            new_lines=self.new_lines,
            lines=tuple(self.lines),
        )


def parse_hunks(diff_text: str) -> list[Hunk]:
    """Parse the hunks of a single-file unified diff.

    File header lines before the first hunk are ignored. Raises
    DiffComputationFailed when a hunk header does not parse or a hunk body
    does not match the line counts of its header.
    """

    hunks: list[Hunk] = []
    current: _HunkBuilder | None = None
    raw_lines = diff_text.split("\n")
    if diff_text.endswith("\n"):
        raw_lines.pop()
    for raw_line in raw_lines:
        line = raw_line[:-1] if raw_line.endswith("\r") else raw_line

        if line.startswith("@@"):
            if current is not None:
                hunks.append(current.build())
            match = HUNK_HEADER_RE.match(line)
            if not match:
                raise DiffComputationFailed(f"Unsupported hunk header: {line}")
            current = _HunkBuilder(
                header=line,
                old_start=int(match.group("old_start")),
                old_lines=int(match.group("old_count") or "1"),
                new_start=int(match.group("new_start")),
                new_lines=int(match.group("new_count") or "1"),
            )
            continue

        if current is None:
            continue
        if line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        if current.complete:
            if line[:1] in {"+", "-", " "}:
                raise DiffComputationFailed(f"Hunk {current.header!r} has more lines than its header declares")
            hunks.append(current.build())
            current = None
            continue
        current.add(line)

    if current is not None:
        hunks.append(current.build())
    return hunks


def synthesize_hunk(status: str, content: str) -> Hunk | None:
    """Build the single whole-file hunk for an added or deleted file."""

    lines = split_content_lines(content)
    count = len(lines)
    if count == 0:
        return None
    if status == "added":
        return Hunk(
            header=f"@@ -0,0 +1,{count} @@ New file",
            old_start=0,
            old_lines=0,
            new_start=1,
            new_lines=count,
            lines=tuple(
                DiffLine(type="added", content=text, new_line_num=number)
                for number, text in enumerate(lines, start=1)
            ),
        )
    if status == "deleted":
        return Hunk(
            header=f"@@ -1,{count} +0,0 @@ Deleted file",
            old_start=1,
            old_lines=count,
            new_start=0,
            new_lines=0,
            lines=tuple(
                DiffLine(type="deleted", content=text, old_line_num=number)
                for number, text in enumerate(lines, start=1)
            ),
        )
    raise DiffComputationFailed(f"Cannot synthesize a diff for status {status!r}")


def _merge_ranges(ranges: list[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def word_change_ranges(old_text: str, new_text: str) -> tuple[list[tuple[int, int]], list[tuple[int, int]]]:
    old_tokens = WORD_TOKEN_RE.findall(old_text)
    new_tokens = WORD_TOKEN_RE.findall(new_text)
    old_offsets = [0]
    for token in old_tokens:
        old_offsets.append(old_offsets[-1] + len(token))
    new_offsets = [0]
    for token in new_tokens:
        new_offsets.append(new_offsets[-1] + len(token))

    old_ranges: list[tuple[int, int]] = []
    new_ranges: list[tuple[int, int]] = []
    matcher = SequenceMatcher(a=old_tokens, b=new_tokens, autojunk=False)
    for tag, old_start, old_end, new_start, new_end in matcher.get_opcodes():
        if tag == "equal":
            continue
        if old_end > old_start:
            old_ranges.append((old_offsets[old_start], old_offsets[old_end]))
        if new_end > new_start:
            new_ranges.append((new_offsets[new_start], new_offsets[new_end]))
    return _merge_ranges(old_ranges), _merge_ranges(new_ranges)


def merge_word_highlights(
    content: str,
    syntax_spans: Sequence[HighlightSpan],
    word_ranges: Sequence[tuple[int, int]],
    word_scope: str,
) -> tuple[HighlightSpan, ...]:
    length = len(content)
    if length == 0:
        return ()
    scopes: list[str | None] = [None] * length
    for span in syntax_spans:
        for position in range(max(span.start, 0), min(span.end, length)):
            scopes[position] = span.scope
    for start, end in word_ranges:
        for position in range(max(start, 0), min(end, length)):
            scopes[position] = word_scope

    merged: list[HighlightSpan] = []
    position = 0
    while position < length:
        scope = scopes[position]
        if scope is None:
            position += 1
            continue
        start = position
        while position < length and scopes[position] == scope:
            position += 1
        merged.append(HighlightSpan(start=start, end=position, scope=scope))
    return tuple(merged)


def line_similarity(left: str, right: str) -> float:
    if not left and not right:
        return 1.0
    return float(fuzz.ratio(left, right)) / 100.0


def _apply_word_highlights(lines: list[DiffLine]) -> list[DiffLine]:
    out = list(lines)
    for old_index, new_index in pair_indexes([line.type for line in lines]):
        if old_index is None or new_index is None or old_index == new_index:
            continue
        deleted_line = out[old_index]
        added_line = out[new_index]
        if line_similarity(deleted_line.content, added_line.content) < MIN_WORD_HIGHLIGHT_SIMILARITY:
            continue
        deleted_ranges, added_ranges = word_change_ranges(deleted_line.content, added_line.content)
        if deleted_ranges:
            out[old_index] = replace(
                deleted_line,
                highlights=merge_word_highlights(
                    deleted_line.content, deleted_line.highlights, deleted_ranges, WORD_DELETED_SCOPE
                ),
            )
        if added_ranges:
            out[new_index] = replace(
                added_line,
                highlights=merge_word_highlights(
                    added_line.content, added_line.highlights, added_ranges, WORD_ADDED_SCOPE
                ),
            )
    return out


def apply_highlights(path: str, hunks: Sequence[Hunk], highlighter: Highlighter | None = None) -> list[Hunk]:
    out: list[Hunk] = []
    for hunk in hunks:
        lines = list(hunk.lines)
        if highlighter is not None:
            lines = [replace(line, highlights=tuple(highlighter(path, line.content))) for line in lines]
        out.append(replace(hunk, lines=tuple(_apply_word_highlights(lines))))
    return out


def diff_stats(hunks: Sequence[Hunk]) -> DiffStats:
    additions = 0
    deletions = 0
    for hunk in hunks:
        for line in hunk.lines:
            if line.type == "added":
                additions += 1
            elif line.type == "deleted":
                deletions += 1
    return DiffStats(additions=additions, deletions=deletions)


def build_file_diff(
    path: str,
    diff_text: str,
    *,
    status: str = "modified",
    binary: bool = False,
    file_content: str | None = None,
    highlighter: Highlighter | None = None,
) -> FileDiff:
    """Turn the raw git diff of one file into a FileDiff.

    ``file_content`` is the head content for added files and the base
    content for deleted files; it is only read when git produced no hunk
    body, in which case a whole-file hunk is synthesized.
    """

    if binary:
        return FileDiff(path=path, hunks=(), content_hash="", stats=DiffStats())

    hunks = parse_hunks(diff_text)
    if not hunks and status in {"added", "deleted"}:
        if file_content is None:
            raise DiffComputationFailed(f"No diff body and no content available for {status} file {path}")
        synthetic = synthesize_hunk(status, file_content)
        hunks = [synthetic] if synthetic is not None else []

    hunks = apply_highlights(path, hunks, highlighter)
    return FileDiff(
        path=path,
        hunks=tuple(hunks),
        content_hash=compute_content_hash(hunks),
        stats=diff_stats(hunks),
    )
