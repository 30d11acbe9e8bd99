"""Terminal rendering of a streamed send.

Agent text goes to stdout as it arrives. Tool status, denials and the
activity line go to stderr so piping stdout yields only the response.
"""

import asyncio
import shutil
import sys
import time

from agent_relay.events import Denial
from agent_relay.session import PermissionDecision
from agent_relay.tools import build_permission_request, risk_level, tool_summary

_DIM = "\033[2m"
_CYAN = "\033[36m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_GREEN = "\033[32m"
_RESET = "\033[0m"
_CLEAR_LINE = "\033[2K\r"
_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
_TICK = 0.1
_MIN_SUMMARY = 10

_RISK_COLORS = {"low": _GREEN, "medium": _YELLOW, "high": _RED}


def _columns() -> int:
    return shutil.get_terminal_size((80, 24)).columns


def _shorten(text: str, width: int) -> str:
    """Cut to ``width`` columns, never below a readable minimum."""
    width = max(width, _MIN_SUMMARY)
    if len(text) <= width:
        return text
    return text[: width - 1].rstrip() + "…"


class ActivityLine:
    """What the agent is doing right now, for one send.

    Tracks the tool in use, how many tools ran and how long the send has
    taken. ``render`` builds the status text; the redraw loop only runs
    when stderr is a terminal.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._started = clock()
        self._frame = 0
        self._task: asyncio.Task | None = None
        self._hidden = False
        self.tool: str | None = None
        self.tool_count = 0

    def tool_started(self, name: str) -> None:
        self.tool = name
        self.tool_count += 1

    def render(self, *, color: bool = False) -> str:
        elapsed = f"{self._clock() - self._started:.0f}s"
        if self.tool is None:
            label = "Thinking…"
            if color:
                label = f"{_CYAN}{label}{_RESET}"
            return f"{label} {elapsed}"
        level = risk_level(self.tool)
        noun = "tool" if self.tool_count == 1 else "tools"
        if color:
            return (
                f"{_CYAN}{self.tool}{_RESET} {_RISK_COLORS[level]}[{level}]{_RESET}"
                f" {_DIM}{self.tool_count} {noun} · {elapsed}{_RESET}"
            )
        return f"{self.tool} [{level}] {self.tool_count} {noun} · {elapsed}"

    def start(self) -> None:
        self._task = asyncio.create_task(self._redraw())

    def hide(self) -> None:
        self._hidden = True
        self.clear()

    def show(self) -> None:
        self._hidden = False

    async def _redraw(self) -> None:
        try:
            while True:
                if not self._hidden:
                    frame = _FRAMES[self._frame % len(_FRAMES)]
                    print(f"{_CLEAR_LINE}  {_CYAN}{frame}{_RESET} {self.render(color=True)}",
                          end="", file=sys.stderr, flush=True)
                    self._frame += 1
                await asyncio.sleep(_TICK)
        except asyncio.CancelledError:
            self.clear()

    def clear(self) -> None:
        print(_CLEAR_LINE, end="", file=sys.stderr, flush=True)

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None


class StreamPrinter:
    """Observer set for one send; pass its methods to ``send()``.

    With ``rich=True`` (stderr is a TTY) an activity line is redrawn between
    chunks and tool lines are colored. Otherwise output is plain text.
    """

    def __init__(self, *, rich: bool | None = None, quiet: bool = False) -> None:
        self.rich = sys.stderr.isatty() if rich is None else rich
        self.quiet = quiet
        self.activity = ActivityLine()
        self._wrote_text = False

    def start(self) -> None:
        if self.rich:
            self.activity.start()

    def stop(self) -> None:
        if self.rich:
            self.activity.stop()
            self.activity.clear()
        if self._wrote_text:
            print(flush=True)
            self._wrote_text = False

    def on_chunk(self, chunk: str) -> None:
        if self.rich:
            self.activity.hide()
        print(chunk, end="", flush=True)
        self._wrote_text = True
        if self.rich:
            self.activity.show()

    def on_tool_use(self, name: str, decision: PermissionDecision) -> None:
        self.activity.tool_started(name)
        if self.quiet:
            return
        if self.rich:
            self.activity.hide()
            mark = f"{_GREEN}✓{_RESET}" if decision == "approved" else f"{_YELLOW}?{_RESET}"
            print(f"\n    {mark} {_CYAN}{name}{_RESET} {_DIM}{decision}{_RESET}", file=sys.stderr, flush=True)
            self.activity.show()
        else:
            print(f"  {name}: {decision}", file=sys.stderr, flush=True)

    def on_permission_denied(self, denials: list[Denial]) -> None:
        if self.rich:
            self.activity.hide()
        print(file=sys.stderr, flush=True)
        for line in format_denials(denials, rich=self.rich):
            print(line, file=sys.stderr, flush=True)


def format_denials(denials: list[Denial], *, rich: bool = False, width: int | None = None) -> list[str]:
    """One line per denied tool call with risk level and input summary."""
    width = _columns() if width is None else width
    lines = []
    for denial in denials:
        req = build_permission_request(denial.tool_name, denial.tool_input)
        summary = tool_summary(denial.tool_name, denial.tool_input)
        if summary:
            summary = _shorten(summary, width - len(req.tool_name) - 24)
        if rich:
            color = _RISK_COLORS[req.risk_level]
            lines.append(
                f"  {_RED}denied{_RESET} {_CYAN}{req.tool_name}{_RESET}"
                f" {color}[{req.risk_level}]{_RESET} {_DIM}{summary}{_RESET}"
            )
        else:
            lines.append(f"  denied {req.tool_name} [{req.risk_level}] {summary}".rstrip())
    return lines
