"""Request and outcome values exchanged with callers."""

from dataclasses import dataclass, field
from typing import Literal

from agent_relay.events import Denial

ContextType = Literal["none", "document", "selection"]

ErrorKind = Literal[
    "binary_not_found",
    "spawn_error",
    "timeout",
    "non_zero_exit",
    "no_output",
    "agent_error",
    "cancelled",
    "busy",
    "internal",
]

AvailabilityState = Literal["ready", "not_installed", "error"]


@dataclass(frozen=True)
class SendRequest:
    """One prompt to the agent, with optional document or selection context."""

    message: str
    context: str | None = None
    context_type: ContextType = "none"
    file_name: str | None = None


@dataclass
class SendOutcome:
    """Terminal result of a send.

    ``content`` is whatever text was accumulated, even on failure, so the
    caller can show partial progress next to the error. ``completed`` is
    False when the agent exited without reporting a result.
    """

    success: bool
    content: str = ""
    error: str | None = None
    kind: ErrorKind | None = None
    denials: list[Denial] = field(default_factory=list)
    exit_code: int | None = None
    completed: bool = True


@dataclass(frozen=True)
class AvailabilityStatus:
    state: AvailabilityState
    version: str | None = None
    message: str | None = None

    @property
    def ready(self) -> bool:
        return self.state == "ready"
