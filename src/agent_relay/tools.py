"""Tool metadata for permission prompts and status lines."""

from dataclasses import dataclass
import json
import os
from typing import Literal

RiskLevel = Literal["low", "medium", "high"]

TOOL_RISK_LEVELS: dict[str, RiskLevel] = {
    # read-only
    "View": "low",
    "Read": "low",
    "GlobTool": "low",
    "GrepTool": "low",
    "LS": "low",
    "Glob": "low",
    "Grep": "low",
    "ReadNotebook": "low",
    # writes
    "Edit": "medium",
    "Write": "medium",
    "NotebookEdit": "medium",
    "MultiEdit": "medium",
    # commands
    "Bash": "high",
    "Terminal": "high",
    "Execute": "high",
}

TOOL_DESCRIPTIONS: dict[str, str] = {
    "View": "Read file contents",
    "Read": "Read file contents",
    "GlobTool": "Find files by pattern",
    "GrepTool": "Search text",
    "Glob": "Find files by pattern",
    "Grep": "Search text",
    "LS": "List directory",
    "ReadNotebook": "Read notebook file",
    "Edit": "Modify a file",
    "Write": "Create or overwrite a file",
    "NotebookEdit": "Modify a notebook file",
    "MultiEdit": "Modify several files",
    "Bash": "Run a terminal command",
    "Terminal": "Run a terminal command",
    "Execute": "Run a command",
}


@dataclass(frozen=True)
class PermissionRequest:
    """What an approval prompt shows for one tool call."""

    tool_name: str
    description: str
    risk_level: RiskLevel
    details: str | None = None


def risk_level(tool_name: str) -> RiskLevel:
    return TOOL_RISK_LEVELS.get(tool_name, "high")


def describe_tool(tool_name: str) -> str:
    return TOOL_DESCRIPTIONS.get(tool_name, f"Use tool {tool_name}")


def build_permission_request(tool_name: str, tool_input: dict | None = None) -> PermissionRequest:
    details = None
    if tool_input:
        details = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    return PermissionRequest(
        tool_name=tool_name,
        description=describe_tool(tool_name),
        risk_level=risk_level(tool_name),
        details=details,
    )


def tool_summary(name: str, inp: dict) -> str:
    """One-line summary of a tool call's input."""
    if name == "Bash":
        cmd = inp.get("command", "")
        parts = [l.strip() for l in cmd.strip().splitlines() if l.strip()]
        raw = parts[-1] if parts else cmd
    elif name in ("Read", "View", "Edit", "Write", "MultiEdit"):
        raw = os.path.basename(inp.get("file_path", ""))
    elif name in ("Glob", "GlobTool"):
        raw = inp.get("pattern", "")
    elif name in ("Grep", "GrepTool"):
        pattern = inp.get("pattern", "")
        glob = inp.get("glob", "")
        # When pattern is trivial (e.g. "."), show the glob filter instead
        if glob and len(pattern) <= 2:
            raw = glob
        else:
            raw = pattern
    elif name == "LS":
        raw = inp.get("path", "")
    else:
        raw = next((v for v in inp.values()
                   if isinstance(v, str) and v), "")[:60]

    return " ".join(str(raw).split())
