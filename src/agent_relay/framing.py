"""Incremental line framing for the agent's stdout.

Raw chunks arrive at arbitrary byte offsets, so a multi-byte character or a
JSON record can be split across reads. The incremental decoder keeps the
partial character bytes and the framer keeps the partial line.
"""

import codecs


class LineFramer:
    """Turn successive byte chunks into complete text lines."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        """Text received after the last record separator."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Decode ``chunk`` and return every line it completes, in order."""
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [_strip_separator(line) for line in lines]

    def flush(self) -> list[str]:
        """Return the trailing partial line at end of stream, if any."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self.reset()
        if not tail:
            return []
        return [_strip_separator(tail)]

    def reset(self) -> None:
        self._decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        self._pending = ""


def _strip_separator(line: str) -> str:
    if line.endswith("\r"):
        return line[:-1]
    return line
