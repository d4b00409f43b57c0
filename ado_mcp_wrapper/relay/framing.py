"""Newline-delimited message framing for the stdio relay."""

from __future__ import annotations

import codecs

DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024


class FrameTooLargeError(ValueError):
    """A single line grew past the accumulator's limit.

    `messages` holds the valid messages extracted from the same chunk;
    `count` is how many oversized lines that chunk contained.
    """

    def __init__(self, size: int, limit: int, messages: list[str], count: int = 1):
        self.size = size
        self.count = count
        self.limit = limit
        self.messages = messages
        super().__init__(f"Message exceeds maximum size ({size} > {limit} characters)")


class LineAccumulator:
    """
    Bounded accumulator turning arbitrary chunks into complete messages.

    Text before each newline is trimmed and, if non-empty, returned as one
    message; the remainder stays buffered. A line longer than `max_size`
    is discarded up to its terminating newline and reported once via
    FrameTooLargeError.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_MESSAGE_SIZE, encoding: str = "utf-8"):
        self.max_size = max_size
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._discarding = False

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and return every message it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text

        messages: list[str] = []
        oversized: list[int] = []
        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            if self._discarding:
                self._discarding = False
                continue
            if len(line) > self.max_size:
                oversized.append(len(line))
                continue
            line = line.strip()
            if line:
                messages.append(line)

        if len(self._buffer) > self.max_size:
            size = len(self._buffer)
            self._buffer = ""
            if not self._discarding:
                self._discarding = True
                oversized.append(size)
        elif self._discarding:
            # Still inside an oversized line
            self._buffer = ""

        if oversized:
            raise FrameTooLargeError(max(oversized), self.max_size, messages, count=len(oversized))
        return messages

    def flush(self) -> list[str]:
        """Return the unterminated remainder (end of input) and reset."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        discarding = self._discarding
        self._buffer = ""
        self._discarding = False
        tail = tail.strip()
        return [tail] if tail and not discarding else []
