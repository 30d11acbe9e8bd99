"""Find the agent binary and build its environment.

Desktop-launched processes often get a minimal PATH that misses the usual
CLI install locations, so the search path is widened with a fixed list.
"""

import os
from pathlib import Path
import shutil


def common_paths() -> list[str]:
    """Install directories checked before the inherited PATH, in order."""
    home = str(Path.home())
    return [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        "/usr/bin",
        "/home/linuxbrew/.linuxbrew/bin",
        os.path.join(home, ".local", "bin"),
        os.path.join(home, ".claude", "local"),
    ]


def extended_path(current: str | None = None) -> str:
    """Prepend the common install directories missing from ``current``."""
    if current is None:
        current = os.environ.get("PATH", "")
    existing = [p for p in current.split(os.pathsep) if p]
    additional: list[str] = []
    for path in common_paths():
        if path not in existing and path not in additional:
            additional.append(path)
    return os.pathsep.join(additional + existing)


def build_env(base: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for the agent subprocess.

    UTF-8 locale keeps stdout decoding predictable. CLAUDECODE="" stops the
    agent from refusing to start when we are ourselves running inside an
    agent session.
    """
    env = dict(os.environ if base is None else base)
    env["PATH"] = extended_path(env.get("PATH", ""))
    env["LANG"] = "en_US.UTF-8"
    env["LC_ALL"] = "en_US.UTF-8"
    env["CLAUDECODE"] = ""
    return env


def find_binary(configured: str) -> str:
    """Resolve the agent executable.

    An existing absolute path wins, then the first match in the common
    install directories, then a lookup on the widened PATH. Falls back to
    the configured value so spawn errors name what the user configured.
    """
    if os.path.isabs(configured) and os.path.exists(configured):
        return configured

    name = os.path.basename(configured)
    for base in common_paths():
        candidate = os.path.join(base, name)
        if os.path.exists(candidate):
            return os.path.realpath(candidate)

    found = shutil.which(configured, path=extended_path())
    return found or configured
