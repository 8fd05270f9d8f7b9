from __future__ import annotations

from typing import Callable, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .diff_builder import WORD_ADDED_SCOPE, WORD_DELETED_SCOPE
from .line_pairing import pair_lines
from .models import (
    CollapseState,
    DiffLine,
    FileDiff,
    FileRecovery,
    FileState,
    ReviewManifest,
    describe_comparison_mode,
    is_working_tree,
)

SCOPE_STYLES = {
    WORD_ADDED_SCOPE: "bold black on green",
    WORD_DELETED_SCOPE: "bold black on red",
    "keyword": "magenta",
    "string": "yellow",
    "comment": "dim",
    "number": "cyan",
    "function": "blue",
    "type": "bright_cyan",
}
LINE_PREFIX = {"added": "+", "deleted": "-", "context": " "}


def status_style(status: str) -> str:
    if status == "added":
        return "green"
    if status == "deleted":
        return "red"
    if status == "renamed":
        return "cyan"
    return "yellow"


def line_style(kind: str) -> str:
    if kind == "added":
        return "green"
    if kind == "deleted":
        return "red"
    return "white"


def short_sha(sha: str) -> str:
    return sha if is_working_tree(sha) else sha[:12]


def recovery_note(recovery: FileRecovery) -> str:
    return f"changed since viewed: was {recovery.old_stats.label()}, now {recovery.new_stats.label()}"


def styled_content(line: DiffLine, *, with_prefix: bool = True) -> Text:
    prefix = LINE_PREFIX.get(line.type, "?") if with_prefix else ""
    text = Text(prefix + line.content, style=line_style(line.type))
    offset = len(prefix)
    for span in line.highlights:
        style = SCOPE_STYLES.get(span.scope)
        if style is None or span.end <= span.start:
            continue
        text.stylize(style, span.start + offset, span.end + offset)
    return text


def _line_number(value: int | None) -> str:
    return "" if value is None else str(value)


def render_summary(
    console: Console,
    manifest: ReviewManifest,
    viewed: int,
    outcome: str | None = None,
    recovered_from: str | None = None,
) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("Session", manifest.session_id)
    table.add_row("Repository", manifest.repo_root)
    if manifest.comparison_mode is not None:
        table.add_row("Comparison", describe_comparison_mode(manifest.comparison_mode))
    table.add_row("Base", f"{manifest.base.ref} ({short_sha(manifest.base.sha)})")
    table.add_row("Head", f"{manifest.head.ref} ({short_sha(manifest.head.sha)})")
    table.add_row("Files", str(len(manifest.files)))
    table.add_row("Viewed", f"{viewed}/{len(manifest.files)}")
    if outcome is not None:
        state = outcome if recovered_from is None else f"{outcome} from {recovered_from}"
        table.add_row("Review state", state)
    console.print(Panel(table, title="Revi Review", border_style="blue"))


def render_file_list(
    console: Console,
    manifest: ReviewManifest,
    file_states: dict[str, FileState],
    recovery_info: dict[str, FileRecovery],
    is_danger_zone: Callable[[str], bool] | None = None,
) -> None:
    table = Table(title=f"Files ({len(manifest.files)})", header_style="bold magenta")
    table.add_column("viewed", no_wrap=True)
    table.add_column("status", no_wrap=True)
    table.add_column("path", overflow="ellipsis")
    table.add_column("+/-", justify="right", no_wrap=True)
    table.add_column("note", overflow="fold")
    for entry in manifest.files:
        state = file_states.get(entry.path)
        viewed = Text("x", style="green") if state is not None and state.viewed else Text(" ")
        path = entry.path if entry.renamed_from is None else f"{entry.renamed_from} -> {entry.path}"
        notes: list[Text] = []
        recovery = recovery_info.get(entry.path)
        if recovery is not None:
            notes.append(Text(recovery_note(recovery), style="yellow"))
        if is_danger_zone is not None and is_danger_zone(entry.path):
            notes.append(Text("danger zone", style="bold red"))
        if entry.binary:
            notes.append(Text("binary", style="dim"))
        table.add_row(
            viewed,
            Text(entry.status, style=status_style(entry.status)),
            path,
            "-" if entry.binary else f"+{entry.additions}/-{entry.deletions}",
            Text(", ").join(notes) if notes else "",
        )
    console.print(table)


def _hunk_collapsed(collapse: CollapseState | None, index: int) -> bool:
    return collapse is not None and index in collapse.hunks


def _file_title(diff: FileDiff) -> str:
    return f"{diff.path}  {diff.stats.label()}"


def render_unified(
    console: Console,
    diff: FileDiff,
    collapse: CollapseState | None = None,
    max_lines: int | None = None,
) -> None:
    if not diff.hunks:
        console.print(Panel("(binary or empty)", title=_file_title(diff), border_style="magenta"))
        return
    if collapse is not None and collapse.file:
        console.print(Panel("(collapsed)", title=_file_title(diff), border_style="magenta"))
        return

    table = Table(title=_file_title(diff), header_style="bold magenta", show_lines=False)
    table.add_column("old", justify="right", style="dim", no_wrap=True)
    table.add_column("new", justify="right", style="dim", no_wrap=True)
    table.add_column("content", overflow="fold")
    shown = 0
    for index, hunk in enumerate(diff.hunks):
        table.add_row("", "", Text(hunk.header, style="cyan"))
        if _hunk_collapsed(collapse, index):
            table.add_row("", "", Text(f"({len(hunk.lines)} lines collapsed)", style="dim"))
            continue
        for line in hunk.lines:
            if max_lines is not None and shown >= max_lines:
                table.add_row("", "", Text("...", style="dim"))
                console.print(table)
                return
            table.add_row(_line_number(line.old_line_num), _line_number(line.new_line_num), styled_content(line))
            shown += 1
    console.print(table)


def render_split(
    console: Console,
    diff: FileDiff,
    collapse: CollapseState | None = None,
    pair: Callable[[Sequence[DiffLine]], list] = pair_lines,
) -> None:
    if not diff.hunks:
        console.print(Panel("(binary or empty)", title=_file_title(diff), border_style="magenta"))
        return
    if collapse is not None and collapse.file:
        console.print(Panel("(collapsed)", title=_file_title(diff), border_style="magenta"))
        return

    table = Table(title=_file_title(diff), header_style="bold magenta")
    table.add_column("old", justify="right", style="dim", no_wrap=True)
    table.add_column("before", overflow="fold", ratio=1)
    table.add_column("new", justify="right", style="dim", no_wrap=True)
    table.add_column("after", overflow="fold", ratio=1)
    for index, hunk in enumerate(diff.hunks):
        table.add_row("", Text(hunk.header, style="cyan"), "", "")
        if _hunk_collapsed(collapse, index):
            table.add_row("", Text(f"({len(hunk.lines)} lines collapsed)", style="dim"), "", "")
            continue
        for line_pair in pair(hunk.lines):
            old_line = line_pair.old_line
            new_line = line_pair.new_line
            table.add_row(
                _line_number(old_line.old_line_num) if old_line is not None else "",
                styled_content(old_line, with_prefix=False) if old_line is not None else "",
                _line_number(new_line.new_line_num) if new_line is not None else "",
                styled_content(new_line, with_prefix=False) if new_line is not None else "",
            )
    console.print(table)


def render_sessions(console: Console, manifests: Sequence[ReviewManifest]) -> None:
    table = Table(title=f"Sessions ({len(manifests)})", header_style="bold magenta")
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("created", no_wrap=True)
    table.add_column("comparison")
    table.add_column("base", no_wrap=True)
    table.add_column("head", no_wrap=True)
    table.add_column("files", justify="right")
    for manifest in manifests:
        comparison = (
            describe_comparison_mode(manifest.comparison_mode) if manifest.comparison_mode is not None else "-"
        )
        table.add_row(
            manifest.session_id,
            manifest.created_at,
            comparison,
            short_sha(manifest.base.sha),
            short_sha(manifest.head.sha),
            str(len(manifest.files)),
        )
    console.print(table)
