"""Tests for the relay CLI."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner
import pytest
import structlog

from agent_relay.cli import _configure_file_logging, main
from agent_relay.models import AvailabilityStatus
from agent_relay.supervisor import ProcessSupervisor

from conftest import FakeProcess, FakeSpawner, jsonl

SPAWN = "agent_relay.supervisor.asyncio.create_subprocess_exec"

BASH_DENIAL = {"tool_name": "Bash", "tool_use_id": "t9", "tool_input": {"command": "npm test"}}


def _answer(text: str, *, denials: list | None = None) -> FakeProcess:
    return FakeProcess([jsonl(
        {"type": "system", "subtype": "init", "session_id": "s1"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}},
        {"type": "result", "is_error": False, "permission_denials": denials or []},
    )])


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RELAY_BINARY", raising=False)
    monkeypatch.delenv("RELAY_SYSTEM_PROMPT", raising=False)
    with patch("agent_relay.cli._configure_file_logging", return_value="relay.log"):
        yield


class TestCheck:
    def test_ready(self):
        status = AvailabilityStatus("ready", version="1.0.42")
        with patch.object(ProcessSupervisor, "check_availability", new=AsyncMock(return_value=status)):
            result = CliRunner().invoke(main, ["check"])
        assert result.exit_code == 0
        assert "1.0.42" in result.output

    def test_not_installed(self):
        status = AvailabilityStatus("not_installed", message="Agent CLI is not installed.")
        with patch.object(ProcessSupervisor, "check_availability", new=AsyncMock(return_value=status)):
            result = CliRunner().invoke(main, ["check"])
        assert result.exit_code == 1
        assert "not installed" in result.output
        assert "RELAY_BINARY" in result.output

    def test_error(self):
        status = AvailabilityStatus("error", message="timeout")
        with patch.object(ProcessSupervisor, "check_availability", new=AsyncMock(return_value=status)):
            result = CliRunner().invoke(main, ["check"])
        assert result.exit_code == 1
        assert "timeout" in result.output

    def test_bad_config_file(self, tmp_path):
        (tmp_path / ".relay").mkdir()
        (tmp_path / ".relay" / "config.json").write_text("[]", encoding="utf-8")
        result = CliRunner().invoke(main, ["check"])
        assert result.exit_code == 1
        assert "JSON object" in result.output


class TestAsk:
    def test_streams_answer(self):
        spawner = FakeSpawner(_answer("The answer is 42."))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["ask", "what", "is", "it?"])
        assert result.exit_code == 0, result.output
        assert "The answer is 42." in result.output
        assert spawner.spawned[0].stdin.data == b"what is it?"

    def test_context_file(self, tmp_path):
        doc = tmp_path / "notes.md"
        doc.write_text("# Notes", encoding="utf-8")
        spawner = FakeSpawner(_answer("ok"))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["ask", "-f", str(doc), "summarize"])
        assert result.exit_code == 0, result.output
        prompt = spawner.spawned[0].stdin.data.decode()
        assert prompt.startswith("Document: notes.md\n\n# Notes")
        assert prompt.endswith("User Question: summarize")

    def test_context_file_and_selection_conflict(self, tmp_path):
        doc = tmp_path / "notes.md"
        doc.write_text("x", encoding="utf-8")
        result = CliRunner().invoke(main, ["ask", "-f", str(doc), "-s", "y", "q"])
        assert result.exit_code == 2
        assert "not both" in result.output

    def test_yes_approves_and_retries(self):
        spawner = FakeSpawner(_answer("Need Bash.", denials=[BASH_DENIAL]), _answer("Tests pass."))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["ask", "--yes", "run tests"])
        assert result.exit_code == 0, result.output
        assert "denied Bash [high] npm test" in result.output
        assert "Tests pass." in result.output
        retry_cmd = spawner.calls[1]
        assert retry_cmd[retry_cmd.index("--resume") + 1] == "s1"
        assert "Bash" in retry_cmd[retry_cmd.index("--allowedTools") + 1]

    def test_declined_retry_sends_once(self):
        spawner = FakeSpawner(_answer("Need Bash.", denials=[BASH_DENIAL]))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["ask", "run tests"], input="n\n")
        assert result.exit_code == 0, result.output
        assert "Allow Bash and retry?" in result.output
        assert len(spawner.calls) == 1

    def test_allow_option_extends_allow_list(self):
        spawner = FakeSpawner(_answer("ok"))
        with patch(SPAWN, new=spawner):
            CliRunner().invoke(main, ["ask", "--allow", "Bash", "--allow", "Edit", "q"])
        tools = spawner.calls[0][spawner.calls[0].index("--allowedTools") + 1].split(",")
        assert "Bash" in tools and "Edit" in tools

    def test_system_prompt_option(self):
        spawner = FakeSpawner(_answer("ok"))
        with patch(SPAWN, new=spawner):
            CliRunner().invoke(main, ["ask", "--system-prompt", "Be brief.", "q"])
        cmd = spawner.calls[0]
        assert cmd[cmd.index("--append-system-prompt") + 1] == "Be brief."

    def test_missing_binary(self, monkeypatch):
        monkeypatch.setenv("RELAY_BINARY", "relay-test-agent-that-does-not-exist")
        result = CliRunner().invoke(main, ["ask", "hello"])
        assert result.exit_code == 1
        assert "not found" in result.output
        assert "npm install" in result.output

    def test_agent_error_result(self):
        proc = FakeProcess([jsonl({"type": "result", "is_error": True, "error": "Credit balance is too low"})])
        with patch(SPAWN, new=FakeSpawner(proc)):
            result = CliRunner().invoke(main, ["ask", "hello"])
        assert result.exit_code == 1
        assert "Credit balance is too low" in result.output


class TestChat:
    def test_tool_commands(self):
        result = CliRunner().invoke(main, ["chat"], input="/allow Bash\n/tools\n/deny Read\n/tools\n/quit\n")
        assert result.exit_code == 0, result.output
        assert "Allowed Bash." in result.output
        assert "Removed Read." in result.output
        assert "Bash, Glob" in result.output

    def test_conversation_resumes(self):
        spawner = FakeSpawner(_answer("Hi there."), _answer("Still here."))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["chat"], input="hello\nagain\n/quit\n")
        assert result.exit_code == 0, result.output
        assert "Hi there." in result.output
        assert "Still here." in result.output
        assert "--resume" not in spawner.calls[0]
        assert spawner.calls[1][spawner.calls[1].index("--resume") + 1] == "s1"

    def test_new_drops_resume_id(self):
        spawner = FakeSpawner(_answer("one"), _answer("two"))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["chat"], input="hello\n/new\nagain\n")
        assert result.exit_code == 0, result.output
        assert "Started a new conversation." in result.output
        assert "--resume" not in spawner.calls[1]

    def test_new_drops_pending_retry(self):
        spawner = FakeSpawner(_answer("Need Bash.", denials=[BASH_DENIAL]))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["chat"], input="run tests\n/new\n/retry\n/tools\n/quit\n")
        assert result.exit_code == 0, result.output
        assert "Nothing to retry." in result.output
        assert len(spawner.calls) == 1
        assert "Bash, " not in result.output

    def test_retry_without_message(self):
        result = CliRunner().invoke(main, ["chat"], input="/retry\n/quit\n")
        assert "Nothing to retry." in result.output

    def test_retry_after_denial(self):
        spawner = FakeSpawner(_answer("Need Bash.", denials=[BASH_DENIAL]), _answer("Done."))
        with patch(SPAWN, new=spawner):
            result = CliRunner().invoke(main, ["chat"], input="run tests\n/retry\n/quit\n")
        assert "/retry" in result.output
        assert "Done." in result.output
        assert "Bash" in spawner.calls[1][spawner.calls[1].index("--allowedTools") + 1]


class TestFileLogging:
    def test_json_lines_at_configured_level(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_LOG_LEVEL", "info")
        path = _configure_file_logging(tmp_path / "logs")
        try:
            log = structlog.get_logger("agent_relay.test")
            log.debug("hidden")
            log.info("send_started", resume_id="s1", prompt="中文")
            try:
                raise RuntimeError("reader crashed")
            except RuntimeError:
                log.exception("dispatch_failed")
        finally:
            structlog.reset_defaults()

        assert Path(path).parent == tmp_path / "logs"
        text = Path(path).read_text(encoding="utf-8")
        assert "中文" in text
        records = [json.loads(line) for line in text.splitlines()]
        assert [r["event"] for r in records] == ["send_started", "dispatch_failed"]
        assert records[0]["level"] == "info"
        assert records[0]["resume_id"] == "s1"
        assert "timestamp" in records[0]
        assert "RuntimeError: reader crashed" in records[1]["exception"]

    def test_unknown_level_falls_back_to_debug(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_LOG_LEVEL", "chatty")
        path = _configure_file_logging(tmp_path)
        try:
            structlog.get_logger("agent_relay.test").debug("agent_stderr", line="x")
        finally:
            structlog.reset_defaults()
        assert json.loads(Path(path).read_text(encoding="utf-8"))["event"] == "agent_stderr"
