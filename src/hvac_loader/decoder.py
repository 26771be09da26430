# src/hvac_loader/decoder.py

"""
Incremental decoder for a top-level JSON array of sensor readings.

The source files are single-line JSON arrays that can be far larger than the
memory available to the function, so the array is never parsed as a whole.
Instead the stream is read in fixed-size chunks and scanned for element
boundaries (a ``,`` or the closing ``]`` at nesting depth zero, outside of any
string). Each element is then validated on its own with pydantic:

- An element that is not valid JSON, or not a valid reading, is reported as a
  `SkippedRecord` and decoding carries on with the next element.
- A missing opening ``[`` or closing ``]`` is fatal and raises
  `MalformedEnvelopeError`. The closing check happens in `close_envelope()`,
  after the caller has consumed every element.

Only the element currently being scanned (plus one read chunk) is held in
memory at any time.
"""

import codecs
import logging
import re
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

import pydantic

from .cancellation import CancellationToken
from .exceptions import MalformedEnvelopeError
from .schemas import SensorReading

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_NON_WHITESPACE = re.compile(r"[^ \t\n\r]")
# Outside a string only these characters can change nesting or end an element.
_STRUCTURAL = re.compile(r'["\[\]{},]')
_STRING_SPECIAL = re.compile(r'["\\]')


@dataclass(frozen=True, slots=True)
class SkippedRecord:
    """Recoverable signal for one array element that could not be decoded."""

    index: int
    reason: str


class StreamingArrayDecoder:
    """
    Lazily decodes the elements of a JSON array read from *stream*.

    Usage is strictly sequential: `open_envelope()`, then iterate `records()`
    to exhaustion, then `close_envelope()`. The decoder never closes the
    stream; that is the owner's job.
    """

    def __init__(
        self,
        stream: BinaryIO,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        token: Optional[CancellationToken] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be a positive integer.")
        self._stream = stream
        self._chunk_size = chunk_size
        self._token = token
        # utf-8-sig drops a leading byte order mark if the producer wrote one.
        self._text_decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
        self._buffer = ""
        self._pos = 0
        self._eof = False
        self._opened = False
        self._closed = False
        self._end_problem: str | None = None
        self.elements_seen = 0
        self.bytes_read = 0

    # --- Envelope ---

    def open_envelope(self) -> None:
        char = self._peek()
        if char is None:
            raise MalformedEnvelopeError("stream is empty, expected '['")
        if char != "[":
            raise MalformedEnvelopeError(f"expected '[' at start of stream, found {char!r}")
        self._pos += 1
        self._opened = True

    def close_envelope(self) -> None:
        if self._closed:
            return
        raise MalformedEnvelopeError(self._end_problem or "closing ']' was not reached")

    # --- Elements ---

    def records(self) -> Iterator[SensorReading | SkippedRecord]:
        if not self._opened:
            raise RuntimeError("open_envelope() must succeed before reading records.")

        if self._peek() == "]":
            self._pos += 1
            self._closed = True
            return

        while True:
            if self._peek() is None:
                self._end_problem = "stream ended before the closing ']'"
                return

            end, delimiter = self._find_element_end()
            text = self._buffer[self._pos : end]
            self._pos = end if delimiter is None else end + 1

            index = self.elements_seen
            self.elements_seen += 1
            yield self._decode(index, text)

            if delimiter is None:
                self._end_problem = "stream ended before the closing ']'"
                return
            if delimiter == "]":
                self._closed = True
                return

    def _decode(self, index: int, text: str) -> SensorReading | SkippedRecord:
        if not text.strip():
            return SkippedRecord(index=index, reason="empty array element")
        try:
            return SensorReading.model_validate_json(text)
        except pydantic.ValidationError as e:
            errors = e.errors(include_url=False)
            first = errors[0] if errors else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = first.get("msg", str(e))
            reason = f"{location}: {message}" if location else message
            return SkippedRecord(index=index, reason=reason)

    # --- Scanning ---

    def _find_element_end(self) -> tuple[int, str | None]:
        """
        Scan forward from the current position to the ``,`` or ``]`` that ends
        the element. Returns the index of that delimiter and the delimiter
        itself, or ``(len(buffer), None)`` if the stream ran out first.
        """
        i = self._pos
        depth = 0
        in_string = False
        while True:
            pattern = _STRING_SPECIAL if in_string else _STRUCTURAL
            match = pattern.search(self._buffer, i)
            if match is None:
                i = len(self._buffer)
                shift = self._fill()
                if shift is None:
                    return len(self._buffer), None
                i -= shift
                continue

            i = match.start()
            char = self._buffer[i]
            if in_string:
                if char == "\\":
                    if i + 1 >= len(self._buffer):
                        shift = self._fill()
                        if shift is None:
                            return len(self._buffer), None
                        i -= shift
                        continue
                    i += 2
                    continue
                in_string = False
            elif char == '"':
                in_string = True
            elif char in "[{":
                depth += 1
            elif char in "]}":
                if depth > 0:
                    depth -= 1
                elif char == "]":
                    return i, char
            elif depth == 0:
                return i, char
            i += 1

    def _peek(self) -> Optional[str]:
        """Skip whitespace and return the next character, or None at end of stream."""
        while True:
            match = _NON_WHITESPACE.search(self._buffer, self._pos)
            if match is not None:
                self._pos = match.start()
                return self._buffer[self._pos]
            self._pos = len(self._buffer)
            if self._fill() is None:
                return None

    def _fill(self) -> Optional[int]:
        """
        Append the next chunk of decoded text to the buffer, first discarding
        everything before the current position. Returns how many characters
        were discarded, or None once the stream is exhausted.
        """
        while not self._eof:
            if self._token is not None:
                self._token.raise_if_cancelled()

            chunk = self._stream.read(self._chunk_size)
            if chunk:
                self.bytes_read += len(chunk)
                text = self._text_decoder.decode(chunk)
            else:
                self._eof = True
                text = self._text_decoder.decode(b"", final=True)

            if text:
                shift = self._pos
                self._buffer = self._buffer[shift:] + text
                self._pos = 0
                return shift
        return None
