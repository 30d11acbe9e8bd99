"""Tool-permission negotiation on top of the supervisor.

    AWAITING_RESPONSE -> DENIALS_PENDING -> RETRYING -> AWAITING_RESPONSE | DONE

A denial is never retried on its own. The caller either allows single
tools for later sends, or approves every denied tool and resends the
exact same request, which resumes the same agent session.
"""

from dataclasses import dataclass
from typing import Literal

import structlog

from agent_relay.dispatcher import ChunkObserver, DenialObserver, ToolObserver
from agent_relay.events import Denial
from agent_relay.models import SendOutcome, SendRequest
from agent_relay.supervisor import ProcessSupervisor

logger = structlog.get_logger(__name__)

RetryState = Literal["idle", "awaiting_response", "denials_pending", "retrying", "done"]


@dataclass
class _Observers:
    on_chunk: ChunkObserver | None = None
    on_tool_use: ToolObserver | None = None
    on_permission_denied: DenialObserver | None = None


def unique_denials(denials: list[Denial]) -> list[Denial]:
    """One record per tool name, first occurrence wins."""
    seen: set[str] = set()
    unique: list[Denial] = []
    for denial in denials:
        if denial.tool_name in seen:
            continue
        seen.add(denial.tool_name)
        unique.append(denial)
    return unique


class RetryCoordinator:
    """Records the last request and drives "approve all and retry"."""

    def __init__(self, supervisor: ProcessSupervisor) -> None:
        self.supervisor = supervisor
        self._state: RetryState = "idle"
        self._last_request: SendRequest | None = None
        self._observers = _Observers()
        self._pending: list[Denial] = []

    @property
    def state(self) -> RetryState:
        return self._state

    @property
    def last_request(self) -> SendRequest | None:
        return self._last_request

    @property
    def pending_denials(self) -> list[Denial]:
        return list(self._pending)

    async def send(
        self,
        request: SendRequest,
        *,
        on_chunk: ChunkObserver | None = None,
        on_tool_use: ToolObserver | None = None,
        on_permission_denied: DenialObserver | None = None,
    ) -> SendOutcome:
        """Send a new request and remember it for a later retry."""
        if self.supervisor.busy:
            return await self.supervisor.send(request)
        self._last_request = request
        self._observers = _Observers(on_chunk, on_tool_use, on_permission_denied)
        return await self._send_recorded()

    def allow(self, tool_name: str) -> None:
        """Allow one tool for future sends without retrying."""
        self.supervisor.session.allow_tool(tool_name)
        logger.info("tool_allowed", tool=tool_name)

    def disallow(self, tool_name: str) -> None:
        self.supervisor.session.disallow_tool(tool_name)
        logger.info("tool_disallowed", tool=tool_name)

    def new_conversation(self) -> None:
        """Start a fresh session and forget the request and denials of the old one."""
        self.supervisor.new_conversation()
        self._state = "idle"
        self._last_request = None
        self._observers = _Observers()
        self._pending = []

    async def approve_all_and_retry(
        self,
        *,
        on_chunk: ChunkObserver | None = None,
        on_tool_use: ToolObserver | None = None,
        on_permission_denied: DenialObserver | None = None,
    ) -> SendOutcome | None:
        """Allow every pending denied tool and resend the last request.

        Observers default to the ones given to the original ``send``.
        Returns None, without sending, when there is no request to retry.
        """
        if self._last_request is None:
            logger.warning("retry_without_request")
            return None
        if self.supervisor.busy:
            return await self.supervisor.send(self._last_request)

        added = [
            d.tool_name for d in self._pending
            if d.tool_name not in self.supervisor.session.allowed_tools
        ]
        self.supervisor.session.allow_tools(d.tool_name for d in self._pending)
        if on_chunk or on_tool_use or on_permission_denied:
            self._observers = _Observers(on_chunk, on_tool_use, on_permission_denied)

        self._state = "retrying"
        logger.info(
            "retry_started",
            tools=[d.tool_name for d in self._pending],
            resume_id=self.supervisor.session.resume_id,
        )
        try:
            return await self._send_recorded()
        finally:
            if added and not self.supervisor.config.remember_approved_tools:
                for tool in added:
                    self.supervisor.session.disallow_tool(tool)
                logger.info("retry_tools_forgotten", tools=added)

    async def _send_recorded(self) -> SendOutcome:
        self._state = "awaiting_response"
        outcome = await self.supervisor.send(
            self._last_request,
            on_chunk=self._observers.on_chunk,
            on_tool_use=self._observers.on_tool_use,
            on_permission_denied=self._observers.on_permission_denied,
        )
        self._pending = unique_denials(outcome.denials)
        self._state = "denials_pending" if self._pending else "done"
        return outcome
