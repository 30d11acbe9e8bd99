"""Conversation state that outlives a single send."""

from dataclasses import dataclass, field
from typing import Iterable, Literal

import structlog

logger = structlog.get_logger(__name__)

PermissionDecision = Literal["approved", "pending", "denied"]

# Read-only tools the agent may run without asking.
DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "View",
    "Read",
    "Glob",
    "Grep",
    "LS",
    "GlobTool",
    "GrepTool",
    "ReadNotebook",
)


@dataclass
class Session:
    """Resume id, tool allow-list and system prompt for one conversation.

    ``resume_id`` latches: the first session id the agent reports is kept
    until ``new_conversation()`` or ``clear()``. ``default_tools`` is what
    ``reset_allowed_tools()`` restores.
    """

    system_prompt: str = ""
    default_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    resume_id: str | None = None
    allowed_tools: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        if not self.allowed_tools:
            self.allowed_tools = set(self.default_tools)

    def latch_resume_id(self, session_id: str | None) -> bool:
        """Store ``session_id`` if none is set yet. Returns True when stored."""
        if not session_id or self.resume_id is not None:
            return False
        self.resume_id = session_id
        logger.info("session_id_saved", resume_id=session_id)
        return True

    def decision_for(self, tool_name: str) -> PermissionDecision:
        return "approved" if tool_name in self.allowed_tools else "pending"

    def allow_tool(self, tool_name: str) -> None:
        self.allowed_tools.add(tool_name)

    def allow_tools(self, tool_names: Iterable[str]) -> None:
        self.allowed_tools.update(tool_names)

    def disallow_tool(self, tool_name: str) -> None:
        self.allowed_tools.discard(tool_name)

    def sorted_tools(self) -> list[str]:
        return sorted(self.allowed_tools)

    def reset_allowed_tools(self) -> None:
        self.allowed_tools = set(self.default_tools)

    def new_conversation(self) -> None:
        """Forget the resume id and restore the default allow-list."""
        self.resume_id = None
        self.reset_allowed_tools()
        logger.info("session_reset")

    def clear(self) -> None:
        """Drop all state, including the allow-list (process teardown)."""
        self.resume_id = None
        self.allowed_tools = set()
