"""
Line protocol spoken by the temperature probe.

The host sends a one-character poll command followed by a newline once per
tick. The probe answers with a single ASCII decimal number terminated by
CR+LF. Anything else on a line is invalid and is dropped.
"""

import math
import re
from dataclasses import dataclass

from roastmon.errors import ParseError

DEFAULT_POLL_COMMAND = "t"
POLL_TERMINATOR = b"\n"
REPLY_DELIMITER = b"\r\n"

# Plain ASCII decimal notation only: no "inf"/"nan" words, no digit
# separators, no non-ASCII digits.
_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$", re.ASCII)


@dataclass(frozen=True)
class Reading:
    """A single decoded probe reading."""

    temperature_c: float


def encode_poll(command: str = DEFAULT_POLL_COMMAND) -> bytes:
    """Return the byte sequence that asks the probe for one reading."""
    if len(command) != 1:
        raise ValueError("poll command must be a single character")
    return command.encode("ascii") + POLL_TERMINATOR


def decode(line) -> Reading:
    """
    Decode one reply line into a Reading.

    Args:
        line (str | bytes): The line, with or without its CR+LF terminator.

    Returns:
        Reading: The decoded temperature.

    Raises:
        ParseError: If the line is not a finite decimal number.
    """
    if isinstance(line, (bytes, bytearray)):
        try:
            line = bytes(line).decode("ascii")
        except UnicodeDecodeError as exc:
            raise ParseError(f"non-ASCII reply: {line!r}") from exc
    if not isinstance(line, str):
        raise ParseError(f"unsupported reply type: {type(line).__name__}")

    text = line.strip()
    if not _DECIMAL_RE.match(text):
        raise ParseError(f"not a decimal number: {line!r}")

    value = float(text)
    # Huge exponents overflow to inf even though the text is well-formed.
    if not math.isfinite(value):
        raise ParseError(f"non-finite value: {line!r}")
    return Reading(temperature_c=value)


class LineBuffer:
    """
    Accumulates raw bytes from the port and splits them into complete lines.

    Partial data is held until its delimiter arrives; the delimiter itself is
    not part of the returned lines.
    """

    def __init__(self, delimiter: bytes = REPLY_DELIMITER, max_size: int = 4096):
        self.delimiter = delimiter
        self.max_size = max_size
        self._pending = b""

    def feed(self, data: bytes) -> list[bytes]:
        self._pending += data
        *lines, self._pending = self._pending.split(self.delimiter)
        if len(self._pending) > self.max_size:
            # A probe that never sends a delimiter is talking garbage.
            self._pending = b""
        return lines

    def clear(self):
        self._pending = b""
