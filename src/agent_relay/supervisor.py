"""Agent subprocess lifecycle: spawn, stream, resolve, kill.

One send runs at a time. A send resolves exactly once, by whichever comes
first: a ``result`` event, process exit, the message timeout, or
``abort()``. Nothing raised inside the send escapes to the caller; every
failure becomes a ``SendOutcome``.
"""

import asyncio
import collections
import contextlib
import re

import structlog

from agent_relay.config import RelayConfig
from agent_relay.dispatcher import (
    ChunkObserver,
    DenialObserver,
    Dispatcher,
    ToolObserver,
)
from agent_relay.events import Denial, parse_event
from agent_relay.framing import LineFramer
from agent_relay.locate import build_env, find_binary
from agent_relay.models import AvailabilityStatus, SendOutcome, SendRequest
from agent_relay.prompts import compose_prompt
from agent_relay.session import Session

logger = structlog.get_logger(__name__)

PROTOCOL_FLAGS = ("-p", "--output-format", "stream-json", "--verbose")

_READ_CHUNK = 64 * 1024
_STDERR_TAIL = 20
_DRAIN_TIMEOUT = 1.0
_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")


def build_args(session: Session) -> list[str]:
    """Agent arguments for the current session state."""
    args = list(PROTOCOL_FLAGS)
    if session.system_prompt:
        args.extend(["--append-system-prompt", session.system_prompt])
    if session.resume_id:
        args.extend(["--resume", session.resume_id])
    if session.allowed_tools:
        args.extend(["--allowedTools", ",".join(session.sorted_tools())])
    return args


class ProcessSupervisor:
    """Owns the agent child process and the per-send buffers."""

    def __init__(self, config: RelayConfig | None = None, session: Session | None = None) -> None:
        self.config = config or RelayConfig()
        self.session = session or Session(
            system_prompt=self.config.system_prompt,
            default_tools=self.config.default_tools(),
        )
        self._framer = LineFramer()
        self._dispatcher = Dispatcher(self.session, max_tracked=self.config.max_tracked_ids)
        self._process: asyncio.subprocess.Process | None = None
        self._pending: asyncio.Future | None = None
        self._tasks: list[asyncio.Task] = []
        self._busy = False
        self._cancelled = False
        self._last_denials: list[Denial] = []
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL)

    # -- settings ----------------------------------------------------------

    def update_settings(
        self,
        *,
        binary: str | None = None,
        system_prompt: str | None = None,
        auto_approve_read_only: bool | None = None,
        remember_approved_tools: bool | None = None,
    ) -> None:
        """Change settings between sends.

        Toggling ``auto_approve_read_only`` changes the default allow-list
        used from the next ``new_conversation()`` on.
        """
        if binary is not None:
            self.config.binary = binary
        if system_prompt is not None:
            self.config.system_prompt = system_prompt
            self.session.system_prompt = system_prompt
        if auto_approve_read_only is not None:
            self.config.auto_approve_read_only = auto_approve_read_only
            self.session.default_tools = self.config.default_tools()
        if remember_approved_tools is not None:
            self.config.remember_approved_tools = remember_approved_tools

    # -- accessors ---------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def last_permission_denials(self) -> list[Denial]:
        return list(self._last_denials)

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # -- availability ------------------------------------------------------

    async def check_availability(self) -> AvailabilityStatus:
        """Probe the agent with ``--version``."""
        binary = find_binary(self.config.binary)
        try:
            proc = await asyncio.create_subprocess_exec(
                binary, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_env(),
            )
        except FileNotFoundError:
            logger.warning("agent_not_installed", binary=binary)
            return AvailabilityStatus("not_installed", message="Agent CLI is not installed.")
        except OSError as exc:
            logger.warning("version_check_spawn_failed", binary=binary, error=str(exc))
            return AvailabilityStatus("error", message=str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.version_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("version_check_timeout", timeout=self.config.version_timeout)
            await _kill_and_reap(proc)
            return AvailabilityStatus("error", message="timeout")

        if proc.returncode == 0:
            match = _VERSION_RE.search(stdout.decode("utf-8", errors="replace"))
            version = match.group(0) if match else None
            logger.info("agent_available", binary=binary, version=version)
            return AvailabilityStatus("ready", version=version)

        message = stderr.decode("utf-8", errors="replace").strip() or "Unknown error"
        logger.warning("version_check_failed", returncode=proc.returncode, error=message)
        return AvailabilityStatus("error", message=message)

    # -- send --------------------------------------------------------------

    async def send(
        self,
        request: SendRequest,
        *,
        on_chunk: ChunkObserver | None = None,
        on_tool_use: ToolObserver | None = None,
        on_permission_denied: DenialObserver | None = None,
    ) -> SendOutcome:
        """Run one request/response cycle against the agent."""
        if self._busy:
            logger.warning("send_rejected_busy")
            return SendOutcome(
                success=False,
                error="A request is already in progress",
                kind="busy",
            )

        self._busy = True
        self._cancelled = False
        self._reset_buffers()
        self._dispatcher = Dispatcher(
            self.session,
            on_chunk=on_chunk,
            on_tool_use=on_tool_use,
            on_permission_denied=on_permission_denied,
            max_tracked=self.config.max_tracked_ids,
        )
        self._pending = asyncio.get_running_loop().create_future()
        try:
            outcome = await self._run(request)
            self._last_denials = list(outcome.denials)
            return outcome
        except asyncio.CancelledError:
            self.abort()
            raise
        finally:
            await self._reap()
            self._pending = None
            self._busy = False

    async def _run(self, request: SendRequest) -> SendOutcome:
        prompt = compose_prompt(request, max_context_length=self.config.max_context_length)
        args = build_args(self.session)
        binary = find_binary(self.config.binary)
        logger.info(
            "send_started",
            binary=binary,
            args=args,
            resume_id=self.session.resume_id,
            prompt_len=len(prompt),
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                binary, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_env(),
            )
        except FileNotFoundError:
            logger.error("agent_not_found", binary=binary)
            return self._resolve(SendOutcome(
                success=False,
                error=f"'{binary}' not found. Install the agent CLI or set its path.",
                kind="binary_not_found",
            ))
        except OSError as exc:
            logger.error("agent_spawn_failed", binary=binary, error=str(exc))
            return self._resolve(SendOutcome(success=False, error=str(exc), kind="spawn_error"))

        self._process = proc
        if self._pending.done():
            # aborted while spawning
            return self._pending.result()

        # stdin is written concurrently with the readers, under the same deadline
        self._tasks = [
            asyncio.create_task(self._deliver_prompt(proc, prompt)),
            asyncio.create_task(self._pump_stdout(proc)),
            asyncio.create_task(self._pump_stderr(proc)),
        ]

        try:
            return await asyncio.wait_for(
                asyncio.shield(self._pending), timeout=self.config.message_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("send_timed_out", timeout=self.config.message_timeout)
            self._cancelled = True
            _kill(proc)
            return self._resolve(SendOutcome(
                success=False,
                content=self._dispatcher.text,
                error=f"Request timed out after {self.config.message_timeout:g} seconds",
                kind="timeout",
            ))

    async def _deliver_prompt(self, proc: asyncio.subprocess.Process, prompt: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("prompt_delivery_failed", error=str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("prompt_delivery_crashed")
            self._resolve(SendOutcome(
                success=False,
                content=self._dispatcher.text,
                error=str(exc) or type(exc).__name__,
                kind="internal",
            ))
        finally:
            proc.stdin.close()

    async def _pump_stdout(self, proc: asyncio.subprocess.Process) -> None:
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                self._feed(self._framer.feed(chunk))
            self._feed(self._framer.flush())
            returncode = await proc.wait()
            logger.info("agent_exited", returncode=returncode)
            self._resolve(self._dispatcher.exit_outcome(returncode))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("stdout_pump_failed")
            self._resolve(SendOutcome(
                success=False,
                content=self._dispatcher.text,
                error=str(exc) or type(exc).__name__,
                kind="internal",
            ))

    async def _pump_stderr(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self.stderr_tail.append(text)
                logger.debug("agent_stderr", line=text)

    def _feed(self, lines: list[str]) -> None:
        for line in lines:
            if self._pending is None or self._pending.done():
                return
            outcome = self._dispatcher.dispatch(parse_event(line))
            if outcome is not None:
                self._resolve(outcome)

    def _resolve(self, outcome: SendOutcome) -> SendOutcome:
        """Settle the current send once; later calls return the first outcome."""
        self._dispatcher.close()
        if self._pending is None:
            return outcome
        if not self._pending.done():
            self._pending.set_result(outcome)
            logger.info(
                "send_resolved",
                success=outcome.success,
                kind=outcome.kind,
                completed=outcome.completed,
                content_len=len(outcome.content),
            )
        return self._pending.result()

    async def _reap(self) -> None:
        """Make sure the child is gone and the reader tasks are finished."""
        proc = self._process
        if proc is not None and proc.returncode is None:
            if self._cancelled:
                await _kill_and_reap(proc)
            else:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.config.exit_grace_seconds)
                except asyncio.TimeoutError:
                    logger.info("agent_kill_after_grace", pid=proc.pid)
                    await _kill_and_reap(proc)

        if self._tasks:
            # pipes close with the child unless a grandchild still holds them
            await asyncio.wait(self._tasks, timeout=_DRAIN_TIMEOUT)
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._process = None
        self._framer.reset()

    # -- cancellation / teardown -------------------------------------------

    def abort(self) -> None:
        """Cancel the in-flight send, if any. Safe to call at any time."""
        if self._process is not None and self._process.returncode is None:
            self._cancelled = True
            _kill(self._process)
        if self._pending is None or self._pending.done():
            return
        self._cancelled = True
        logger.info("send_aborted")
        self._resolve(SendOutcome(
            success=False,
            content=self._dispatcher.text,
            error="Request was cancelled",
            kind="cancelled",
        ))

    def terminate(self) -> None:
        """Kill any live child and drop per-send buffers."""
        self.abort()
        self._reset_buffers()

    def new_conversation(self) -> None:
        """Start over: no resume id, default allow-list, no live process."""
        self.terminate()
        self.session.new_conversation()

    def shutdown(self) -> None:
        """Process-wide teardown: kill the child and clear the session."""
        logger.info("supervisor_shutdown")
        self.terminate()
        self.session.clear()

    def _reset_buffers(self) -> None:
        self._framer.reset()
        self._dispatcher.reset()
        self._last_denials = []
        self.stderr_tail.clear()


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    _kill(proc)
    await proc.wait()
