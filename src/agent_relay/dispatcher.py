"""Per-send event dispatch: dedup, text aggregation, observer callbacks."""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

import structlog

from agent_relay.events import (
    AssistantEvent,
    Denial,
    InitEvent,
    NoiseEvent,
    OtherEvent,
    ProtocolEvent,
    ResultEvent,
    TextBlock,
    ToolUseBlock,
    UserEvent,
    event_kind,
)
from agent_relay.models import SendOutcome
from agent_relay.session import PermissionDecision, Session

logger = structlog.get_logger(__name__)

ChunkObserver = Callable[[str], None]
ToolObserver = Callable[[str, PermissionDecision], None]
DenialObserver = Callable[[list[Denial]], None]

PARAGRAPH_BREAK = "\n\n"
DEFAULT_MAX_TRACKED = 10_000


class BoundedSet:
    """Insertion-ordered set that evicts its oldest entries past ``limit``."""

    def __init__(self, limit: int = DEFAULT_MAX_TRACKED) -> None:
        self._limit = limit
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item: str) -> None:
        self._items[item] = None
        self._items.move_to_end(item)
        while len(self._items) > self._limit:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()


@dataclass
class ResponseAccumulator:
    """Ephemeral state of one send."""

    limit: int = DEFAULT_MAX_TRACKED
    text: str = ""
    last_kind: str | None = None
    denials: list[Denial] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.texts = BoundedSet(self.limit)
        self.tool_ids = BoundedSet(self.limit)
        self.uuids = BoundedSet(self.limit)


class Dispatcher:
    """Consume events of one send in arrival order.

    ``dispatch()`` returns a ``SendOutcome`` for the terminal ``result``
    event and None otherwise. After ``close()`` no observer is called.
    """

    def __init__(
        self,
        session: Session,
        *,
        on_chunk: ChunkObserver | None = None,
        on_tool_use: ToolObserver | None = None,
        on_permission_denied: DenialObserver | None = None,
        max_tracked: int = DEFAULT_MAX_TRACKED,
    ) -> None:
        self._session = session
        self._on_chunk = on_chunk
        self._on_tool_use = on_tool_use
        self._on_permission_denied = on_permission_denied
        self._max_tracked = max_tracked
        self._acc = ResponseAccumulator(max_tracked)
        self._closed = False

    @property
    def text(self) -> str:
        return self._acc.text

    @property
    def denials(self) -> list[Denial]:
        return list(self._acc.denials)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def reset(self) -> None:
        """Drop accumulated text and dedup state. A closed dispatcher stays closed."""
        self._acc = ResponseAccumulator(self._max_tracked)

    def dispatch(self, event: ProtocolEvent) -> SendOutcome | None:
        if self._closed or isinstance(event, NoiseEvent):
            return None

        if event.uuid is not None:
            if event.uuid in self._acc.uuids:
                logger.debug("duplicate_event_dropped", uuid=event.uuid)
                return None
            self._acc.uuids.add(event.uuid)

        self._session.latch_resume_id(event.session_id)
        new_turn = isinstance(event, AssistantEvent) and self._acc.last_kind != "assistant"
        self._acc.last_kind = event_kind(event)

        if isinstance(event, InitEvent):
            logger.info("session_initialized", session_id=event.session_id)
            return None
        if isinstance(event, AssistantEvent):
            self._handle_assistant(event, new_turn)
            return None
        if isinstance(event, UserEvent):
            for block in event.content:
                logger.debug("tool_result", tool_use_id=block.tool_use_id)
            return None
        if isinstance(event, ResultEvent):
            return self._handle_result(event)
        if isinstance(event, OtherEvent):
            logger.debug("event_ignored", event_type=event.type, subtype=event.subtype)
            return None
        raise TypeError(f"unhandled event: {event!r}")

    def exit_outcome(self, returncode: int | None) -> SendOutcome:
        """Outcome for a process that exited without a ``result`` event."""
        if self._acc.text:
            return SendOutcome(
                success=True,
                content=self._acc.text,
                exit_code=returncode,
                completed=False,
            )
        return SendOutcome(
            success=False,
            error=f"Process exited with code {returncode}",
            kind="no_output" if returncode == 0 else "non_zero_exit",
            exit_code=returncode,
            completed=False,
        )

    def _handle_assistant(self, event: AssistantEvent, new_turn: bool) -> None:
        break_pending = new_turn
        for block in event.content:
            if isinstance(block, TextBlock):
                if block.text in self._acc.texts:
                    continue
                self._acc.texts.add(block.text)
                if break_pending and self._acc.text:
                    self._emit(PARAGRAPH_BREAK)
                break_pending = False
                self._emit(block.text)
            elif isinstance(block, ToolUseBlock):
                if block.id in self._acc.tool_ids:
                    continue
                self._acc.tool_ids.add(block.id)
                decision = self._session.decision_for(block.name)
                logger.info("tool_use", tool=block.name, tool_use_id=block.id, decision=decision)
                if self._on_tool_use is not None:
                    self._on_tool_use(block.name, decision)

    def _handle_result(self, event: ResultEvent) -> SendOutcome:
        if event.denials:
            self._acc.denials = list(event.denials)
            logger.info(
                "permission_denied",
                tools=[d.tool_name for d in event.denials],
            )
            if self._on_permission_denied is not None:
                self._on_permission_denied(list(event.denials))

        if event.is_error:
            return SendOutcome(
                success=False,
                content=self._acc.text,
                error=event.error or "Agent reported an error",
                kind="agent_error",
                denials=list(event.denials),
            )
        return SendOutcome(
            success=True,
            content=self._acc.text,
            denials=list(event.denials),
        )

    def _emit(self, text: str) -> None:
        self._acc.text += text
        if self._on_chunk is not None:
            self._on_chunk(text)
