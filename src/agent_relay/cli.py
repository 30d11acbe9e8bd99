"""CLI entry point: relay check, ask, chat."""

import asyncio
import atexit
import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable

import click
import structlog

from agent_relay.config import ConfigError, RelayConfig, load_config
from agent_relay.display import StreamPrinter
from agent_relay.models import SendOutcome, SendRequest
from agent_relay.retry import RetryCoordinator
from agent_relay.supervisor import ProcessSupervisor

# Upper bound on automatic approve-and-retry rounds for one question
MAX_RETRIES = 3

INSTALL_HINT = (
    "Install the agent CLI (npm install -g @anthropic-ai/claude-code) or set "
    "\"binary\" in .relay/config.json / RELAY_BINARY to its full path."
)

LOG_LEVEL_ENV = "RELAY_LOG_LEVEL"


def _file_log_level() -> int:
    """Level for the log file, from RELAY_LOG_LEVEL (default DEBUG)."""
    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "DEBUG").upper())
    return level if isinstance(level, int) else logging.DEBUG


def _quiet_console() -> None:
    """Keep library log events off the terminal; only critical events reach stderr."""
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.dev.ConsoleRenderer(colors=False)],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _configure_file_logging(log_dir: Path | None = None) -> str:
    """Send structlog events for this run to a JSON-lines file and return its path.

    One file per run, ``.relay/logs/relay-<timestamp>.log`` by default, so the
    terminal keeps only the agent's answer and the tool lines.
    """
    log_dir = log_dir or Path(".relay") / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"relay-{datetime.datetime.now():%Y%m%d-%H%M%S}.log"

    log_file = log_path.open("a", encoding="utf-8")
    atexit.register(log_file.close)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_file_log_level()),
        logger_factory=structlog.WriteLoggerFactory(file=log_file),
        cache_logger_on_first_use=False,
    )
    return str(log_path)


def _load_config() -> RelayConfig:
    try:
        return load_config(os.getcwd())
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_request(
    message: str,
    context_file: str | None,
    selection: str | None,
) -> SendRequest:
    if context_file and selection:
        raise click.UsageError("Use either --context-file or --selection, not both.")
    if context_file:
        return SendRequest(
            message=message,
            context=Path(context_file).read_text(encoding="utf-8", errors="replace"),
            context_type="document",
            file_name=os.path.basename(context_file),
        )
    if selection:
        return SendRequest(message=message, context=selection, context_type="selection")
    return SendRequest(message=message)


def _run_send(
    start: Callable[[StreamPrinter], Awaitable[SendOutcome | None]],
    *,
    quiet: bool = False,
) -> SendOutcome | None:
    """Run one send with live output. Ctrl-C aborts it and returns None."""
    printer = StreamPrinter(quiet=quiet)

    async def _go() -> SendOutcome | None:
        printer.start()
        try:
            return await start(printer)
        finally:
            printer.stop()

    try:
        return asyncio.run(_go())
    except KeyboardInterrupt:
        click.echo("\nCancelled.", err=True)
        return None


def _send(coordinator: RetryCoordinator, request: SendRequest, *, quiet: bool) -> SendOutcome | None:
    return _run_send(
        lambda p: coordinator.send(
            request,
            on_chunk=p.on_chunk,
            on_tool_use=p.on_tool_use,
            on_permission_denied=p.on_permission_denied,
        ),
        quiet=quiet,
    )


def _retry(coordinator: RetryCoordinator, *, quiet: bool) -> SendOutcome | None:
    return _run_send(
        lambda p: coordinator.approve_all_and_retry(
            on_chunk=p.on_chunk,
            on_tool_use=p.on_tool_use,
            on_permission_denied=p.on_permission_denied,
        ),
        quiet=quiet,
    )


def _report_failure(outcome: SendOutcome, supervisor: ProcessSupervisor) -> None:
    click.echo(f"Error: {outcome.error}", err=True)
    if outcome.kind == "binary_not_found":
        click.echo(INSTALL_HINT, err=True)
    elif outcome.kind in ("non_zero_exit", "no_output") and supervisor.stderr_tail:
        click.echo("\n".join(supervisor.stderr_tail), err=True)


@click.group()
@click.version_option(package_name="agent-relay")
def main() -> None:
    """Relay: converse with a command-line AI agent."""
    _quiet_console()


@main.command()
def check() -> None:
    """Check that the agent CLI is installed and runs."""
    supervisor = ProcessSupervisor(_load_config())
    status = asyncio.run(supervisor.check_availability())
    if status.ready:
        version = status.version or "unknown version"
        click.echo(f"Agent CLI ready ({version}).")
        return
    if status.state == "not_installed":
        click.echo("Agent CLI is not installed.", err=True)
        click.echo(INSTALL_HINT, err=True)
    else:
        click.echo(f"Agent CLI check failed: {status.message}", err=True)
    raise SystemExit(1)


@main.command()
@click.option("--context-file", "-f", default=None, type=click.Path(exists=True, dir_okay=False), help="Attach a document as context.")
@click.option("--selection", "-s", default=None, help="Attach selected text as context.")
@click.option("--system-prompt", default=None, help="Extra system prompt for the agent.")
@click.option("--allow", "allow_tools", multiple=True, help="Allow a tool without confirmation (repeatable).")
@click.option("--yes", "-y", is_flag=True, help="Approve denied tools and retry without asking.")
@click.option("--quiet", "-q", is_flag=True, help="Hide tool status lines.")
@click.argument("question", nargs=-1, required=True)
def ask(
    question: tuple[str, ...],
    context_file: str | None,
    selection: str | None,
    system_prompt: str | None,
    allow_tools: tuple[str, ...],
    yes: bool,
    quiet: bool,
) -> None:
    """Ask the agent one question and stream the answer."""
    log_path = _configure_file_logging()
    supervisor = ProcessSupervisor(_load_config())
    if system_prompt is not None:
        supervisor.update_settings(system_prompt=system_prompt)
    coordinator = RetryCoordinator(supervisor)
    for tool in allow_tools:
        coordinator.allow(tool)

    request = _build_request(" ".join(question), context_file, selection)
    try:
        outcome = _send(coordinator, request, quiet=quiet)
        retries = 0
        while outcome is not None and coordinator.state == "denials_pending" and retries < MAX_RETRIES:
            names = ", ".join(d.tool_name for d in coordinator.pending_denials)
            if not yes and not click.confirm(f"Allow {names} and retry?", err=True):
                break
            retries += 1
            outcome = _retry(coordinator, quiet=quiet)
        if outcome is not None and not outcome.success:
            _report_failure(outcome, supervisor)
    finally:
        supervisor.shutdown()

    click.echo(f"\nLog: {log_path}", err=True)
    if outcome is None:
        raise SystemExit(130)
    if not outcome.success:
        raise SystemExit(1)


CHAT_HELP = """\
Commands:
  /new          start a new conversation
  /allow NAME   allow a tool without confirmation
  /deny NAME    remove a tool from the allow-list
  /tools        show allowed tools
  /retry        approve denied tools and resend the last message
  /quit         exit"""


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Hide tool status lines.")
def chat(quiet: bool) -> None:
    """Interactive multi-turn conversation with the agent."""
    log_path = _configure_file_logging()
    supervisor = ProcessSupervisor(_load_config())
    coordinator = RetryCoordinator(supervisor)
    click.echo(CHAT_HELP, err=True)

    try:
        while True:
            try:
                line = click.prompt("", prompt_suffix="> ", err=True).strip()
            except (click.Abort, EOFError):
                break
            if not line:
                continue

            if line.startswith("/"):
                cmd, _, arg = line.partition(" ")
                arg = arg.strip()
                if cmd == "/quit":
                    break
                if cmd == "/new":
                    coordinator.new_conversation()
                    click.echo("Started a new conversation.", err=True)
                elif cmd == "/allow" and arg:
                    coordinator.allow(arg)
                    click.echo(f"Allowed {arg}.", err=True)
                elif cmd == "/deny" and arg:
                    coordinator.disallow(arg)
                    click.echo(f"Removed {arg}.", err=True)
                elif cmd == "/tools":
                    click.echo(", ".join(supervisor.session.sorted_tools()) or "(none)", err=True)
                elif cmd == "/retry":
                    if coordinator.last_request is None:
                        click.echo("Nothing to retry.", err=True)
                        continue
                    outcome = _retry(coordinator, quiet=quiet)
                    if outcome is not None and not outcome.success:
                        _report_failure(outcome, supervisor)
                else:
                    click.echo(CHAT_HELP, err=True)
                continue

            outcome = _send(coordinator, SendRequest(message=line), quiet=quiet)
            if outcome is not None and not outcome.success:
                _report_failure(outcome, supervisor)
            if coordinator.state == "denials_pending":
                click.echo("Use /allow NAME or /retry to approve and resend.", err=True)
    finally:
        supervisor.shutdown()
        click.echo(f"\nLog: {log_path}", err=True)
