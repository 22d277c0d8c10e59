"""Line-oriented decoder for the server-to-client event stream.

The stream is consumed as an open-ended byte sequence. Each network read is fed
to :class:`SSELineParser`, which decodes it incrementally as UTF-8, holds back
any trailing partial line, and turns complete ``data:`` lines into
:class:`SSEFrame` objects. The sequence of frames produced does not depend on
how the bytes were split across reads.
"""

import codecs
import logging
from collections.abc import AsyncGenerator, AsyncIterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEFrame:
    """One payload decoded from the stream."""

    data: str
    """The text following ``data:``, with surrounding whitespace removed."""

    event: str | None = None
    """The most recent ``event:`` type seen in the current record, if any."""


def _utf8_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


@dataclass
class SSELineParser:
    """
    Parser state for a continuous event stream.

    One ``data:`` line yields one frame; multi-line data records are not joined.
    """

    _decoder: codecs.IncrementalDecoder = field(default_factory=_utf8_decoder)
    """Keeps multi-byte sequences split across reads intact."""

    _buffer: str = ""
    """Decoded text after the last line terminator seen."""

    _event: str | None = None
    """Event type of the record currently being read."""

    def _process_line(self, line: str) -> SSEFrame | None:
        # Blank line ends the record
        if not line:
            self._event = None
            return None

        # Comment line (ignored)
        if line.startswith(":"):
            return None

        field_name, _, value = line.partition(":")
        match field_name:
            case "event":
                self._event = value.strip() or None
                logger.debug(f"SSE event type: {self._event}")
            case "data":
                data = value.strip()
                if not data or data == DONE_SENTINEL:
                    return None
                return SSEFrame(data=data, event=self._event)
            case _:
                logger.debug(f"Ignoring SSE field: {field_name}")
        return None

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        """
        Feed bytes into the parser and return the frames they complete.

        Args:
            chunk: Raw bytes from one network read.

        Returns:
            Frames for every complete line, in stream order.
        """
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")

        frames: list[SSEFrame] = []
        for line in lines:
            frame = self._process_line(line.removesuffix("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    @property
    def pending(self) -> str:
        """Text of the partial line still waiting for its terminator."""
        return self._buffer


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncGenerator[SSEFrame, None]:
    """Yield frames from an async iterable of byte chunks.

    A trailing line without a terminator when the input ends is discarded.
    """
    parser = SSELineParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    if parser.pending:
        logger.debug(f"Discarding unterminated line at end of stream: {parser.pending!r}")
