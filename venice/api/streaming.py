# venice/api/streaming.py
"""
Server-sent event streaming for venice API responses.

Streamed completions arrive as a ``text/event-stream`` body. This module
turns the raw bytes into decoded chunks in two layers:

* :class:`StreamDecoder` is a pure, incremental decoder. It is fed bytes as
  they arrive and hands out one decoded item at a time. It does no I/O, so
  the result is the same however the bytes are split.
* :class:`ChunkStream` pulls bytes from an open HTTP response, feeds the
  decoder and exposes the chunks as a lazy iterator that can be cancelled.

Example:
    Stream a chat completion::

        stream = client.chat.stream_completion({
            "model": "llama-3.3-70b",
            "messages": [{"role": "user", "content": "Hi"}],
        })

        with stream:
            for chunk in stream:
                print(chunk.text, end="", flush=True)

        print(f"\\nfinished cleanly: {stream.done}")
"""

import json
import logging
import socket
import threading
from typing import Any, Callable, Iterable, Iterator, List, Optional

import requests
import urllib3

from ..constants import STREAM_DONE_SENTINEL
from ..exceptions import CancelledError, DecodeError, TransportError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


class _EndOfStream:
    """Marker returned by the decoder for the end-of-stream sentinel."""

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()

_CR = 0x0D
_LF = 0x0A


class StreamBuffer:
    """
    Bytes received but not yet consumed, plus the event being assembled.

    The buffer holds the tail of the stream that does not yet form a
    complete line, and the ``data`` lines of the event whose terminating
    blank line has not been seen.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._scanned = 0
        self.data_lines: List[str] = []
        self.total_bytes = 0
        self.chunks_received = 0

    def add_chunk(self, chunk_data: bytes):
        """Append raw bytes."""
        self._buffer.extend(chunk_data)
        self.total_bytes += len(chunk_data)
        self.chunks_received += 1

    def take_line(self, final: bool = False) -> Optional[bytes]:
        """
        Remove and return the next complete line without its terminator.

        Lines end with ``\\n``, ``\\r\\n`` or ``\\r``. A ``\\r`` that is the
        last byte in the buffer could be the start of ``\\r\\n``, so it only
        terminates the line once the next byte arrives or ``final`` is set.

        Returns:
            Optional[bytes]: The line, or ``None`` if no complete line is buffered
        """
        buf = self._buffer
        for index in range(self._scanned, len(buf)):
            byte = buf[index]
            if byte == _LF:
                end = index + 1
            elif byte == _CR:
                if index + 1 < len(buf):
                    end = index + 2 if buf[index + 1] == _LF else index + 1
                elif final:
                    end = index + 1
                else:
                    self._scanned = index
                    return None
            else:
                continue

            line = bytes(buf[:index])
            del buf[:end]
            self._scanned = 0
            return line

        self._scanned = len(buf)
        return None

    @property
    def has_pending(self) -> bool:
        """Whether an unterminated line or event is buffered."""
        return bool(self._buffer) or bool(self.data_lines)

    def discard(self):
        """Drop buffered bytes and the event in progress."""
        self._buffer.clear()
        self._scanned = 0
        self.data_lines = []

    def __len__(self) -> int:
        return len(self._buffer)

    def __repr__(self) -> str:
        return f"StreamBuffer(pending={len(self._buffer)} bytes, data_lines={len(self.data_lines)})"


class StreamDecoder:
    """
    Incremental server-sent event decoder.

    Each dispatched event's data is parsed as JSON and, if ``parse`` is given,
    passed through it to produce the chunk type. The ``[DONE]`` sentinel ends
    the stream. After the sentinel, an error or :meth:`close`, the decoder
    yields nothing further.

    Args:
        parse (Callable, optional): Converts a decoded JSON value to a chunk.
            Any exception it raises becomes a :class:`DecodeError`.

    Example:
        Decode bytes as they arrive::

            decoder = StreamDecoder(parse=ChatCompletionChunk.from_dict)

            decoder.feed(b'data: {"id": "1", "choices": []}\\n')
            decoder.feed(b'\\ndata: [DONE]\\n\\n')

            decoder.next_item()   # ChatCompletionChunk(id='1', ...)
            decoder.next_item()   # END_OF_STREAM
    """

    def __init__(self, parse: Optional[Callable[[Any], Any]] = None):
        self.parse = parse
        self.buffer = StreamBuffer()
        self.events_decoded = 0
        self._eof = False
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the decoder will produce no further items."""
        return self._closed

    def feed(self, data: bytes):
        """
        Append received bytes.

        Bytes fed after the decoder closed are ignored.
        """
        if self._closed or not data:
            return
        self.buffer.add_chunk(data)

    def finish(self):
        """
        Signal that the channel has ended.

        A pending ``\\r`` then terminates its line. Any event still
        unterminated once the buffered lines are consumed is discarded.
        """
        self._eof = True

    def next_item(self) -> Any:
        """
        Decode the next item from the buffered bytes.

        Returns:
            The next decoded chunk, :data:`END_OF_STREAM` for the sentinel,
            or ``None`` when more bytes are needed (or the decoder closed).

        Raises:
            DecodeError: If an event is not valid UTF-8 or JSON, or ``parse``
                rejects it. The decoder is closed afterwards.
        """
        while not self._closed:
            line = self.buffer.take_line(final=self._eof)

            if line is None:
                if self._eof:
                    if self.buffer.has_pending:
                        logger.debug(
                            f"Discarding unterminated event at end of stream "
                            f"({len(self.buffer)} bytes, {len(self.buffer.data_lines)} data lines)"
                        )
                    self.close()
                return None

            payload = self._process_line(line)
            if payload is None:
                continue

            if payload.strip() == STREAM_DONE_SENTINEL:
                logger.debug("Received end-of-stream sentinel")
                self.close()
                return END_OF_STREAM

            return self._decode(payload)

        return None

    def iter_chunks(self, chunks: Iterable[bytes]) -> Iterator[Any]:
        """
        Lazily decode an iterable of byte chunks.

        Stops at the sentinel or when ``chunks`` is exhausted.
        """
        for data in chunks:
            self.feed(data)
            while True:
                item = self.next_item()
                if item is None:
                    break
                if item is END_OF_STREAM:
                    return
                yield item

        self.finish()
        while True:
            item = self.next_item()
            if item is None or item is END_OF_STREAM:
                return
            yield item

    def close(self):
        """Discard buffered bytes; no further items are produced."""
        self._closed = True
        self.buffer.discard()

    def _process_line(self, raw_line: bytes) -> Optional[str]:
        """Apply one line to the event in progress; return data on dispatch."""
        try:
            line = raw_line.decode("utf-8")
        except UnicodeDecodeError as e:
            self.close()
            raise DecodeError(
                f"Stream line is not valid UTF-8: {e}",
                payload=raw_line.decode("utf-8", errors="replace")
            ) from e

        if not line:
            if not self.buffer.data_lines:
                return None
            payload = "\n".join(self.buffer.data_lines)
            self.buffer.data_lines = []
            return payload

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self.buffer.data_lines.append(value)
        return None

    def _decode(self, payload: str) -> Any:
        try:
            value = json.loads(payload)
        except ValueError as e:
            self.close()
            raise DecodeError(f"Stream event is not valid JSON: {e}", payload=payload) from e

        if self.parse is not None:
            try:
                value = self.parse(value)
            except Exception as e:
                self.close()
                raise DecodeError(
                    f"Stream event could not be parsed: {type(e).__name__}: {e}",
                    payload=payload
                ) from e

        self.events_decoded += 1
        return value

    def __repr__(self) -> str:
        return f"StreamDecoder(events={self.events_decoded}, closed={self._closed}, {self.buffer})"


def _channel_socket(channel) -> Optional[socket.socket]:
    raw = getattr(channel, "raw", None)
    connection = getattr(raw, "_connection", None) or getattr(raw, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        # Connection already released; the socket lives on behind the body file
        fp = getattr(getattr(raw, "_fp", None), "fp", None)
        sock = getattr(getattr(fp, "raw", None), "_sock", None)
    return sock if isinstance(sock, socket.socket) else None


def _shutdown_socket(channel):
    """
    Shut down the socket under a streamed response.

    Closing a response from another thread does not wake a reader blocked
    in ``recv``; shutting the socket down does.
    """
    sock = _channel_socket(channel)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug(f"Socket shutdown failed: {e}")


class ChunkStream:
    """
    Lazy iterator of decoded chunks over an open streamed response.

    The stream is pull-based: bytes are read only when the next chunk is
    requested, so a slow consumer never causes unbounded buffering. It is
    finite and cannot be restarted. A terminal error is raised from
    ``__next__``; the iterator is exhausted afterwards.

    Closing the stream, cancelling its token, passing the token's deadline or
    dropping the iterator closes the underlying connection and discards any
    partially received event. A read interrupted by cancellation raises
    :class:`~venice.exceptions.CancelledError`.

    Args:
        channel (requests.Response): Open response with ``stream=True``
        decoder (StreamDecoder): Decoder for the body
        cancel (CancellationToken, optional): Cancellation for the stream
        rate_limit (RateLimitSnapshot, optional): Snapshot from the opening response
        status (int, optional): Status code of the opening response
        attempts (int): Attempts the opening request took
        chunk_size (int, optional): Read size passed to ``iter_content``.
            ``None`` yields data as soon as it arrives.
        owns_cancel (bool): Dispose ``cancel`` when the stream closes

    Attributes:
        done (bool): True once the end-of-stream sentinel has been received
        chunks_received (int): Number of chunks handed to the consumer
    """

    def __init__(
        self,
        channel: requests.Response,
        decoder: StreamDecoder,
        cancel: Optional[CancellationToken] = None,
        rate_limit=None,
        status: Optional[int] = None,
        attempts: int = 1,
        chunk_size: Optional[int] = None,
        owns_cancel: bool = False
    ):
        self.channel = channel
        self.decoder = decoder
        self.cancel = cancel
        self.rate_limit = rate_limit
        self.status = status if status is not None else getattr(channel, "status_code", None)
        self.attempts = attempts
        self.chunk_size = chunk_size
        self._owns_cancel = owns_cancel

        self.done = False
        self.chunks_received = 0
        self._finished = False
        self._closed = False
        self._lock = threading.Lock()
        self._reader: Optional[Iterator[bytes]] = None

        if self.cancel is not None:
            self.cancel.add_callback(self._on_cancel)

    def __iter__(self) -> "ChunkStream":
        return self

    def __next__(self) -> Any:
        if self._finished:
            raise StopIteration

        try:
            item = self._next_item()
        except BaseException:
            self._finished = True
            self.close()
            raise

        if item is None:
            self._finished = True
            if not self.done:
                logger.info(
                    f"Stream ended without end-of-stream sentinel after "
                    f"{self.chunks_received} chunks"
                )
            self.close()
            raise StopIteration

        self.chunks_received += 1
        return item

    def _next_item(self) -> Any:
        while True:
            self._raise_if_cancelled()

            item = self.decoder.next_item()
            if item is END_OF_STREAM:
                self.done = True
                return None
            if item is not None:
                return item
            if self.decoder.closed:
                return None

            data = self._read()
            if data is None:
                self.decoder.finish()
            else:
                self.decoder.feed(data)

    def _read(self) -> Optional[bytes]:
        """Read the next bytes from the channel, ``None`` at its end."""
        try:
            if self._reader is None:
                self._reader = self.channel.iter_content(chunk_size=self.chunk_size)
            return next(self._reader)
        except StopIteration:
            return None
        except Exception as e:
            if self._is_cancelled():
                raise self._cancelled_error() from e
            if isinstance(e, (requests.exceptions.RequestException, urllib3.exceptions.HTTPError)):
                raise TransportError(
                    f"Stream interrupted: {type(e).__name__}: {e}",
                    url=getattr(self.channel, "url", None),
                    original_error=e,
                    attempts=self.attempts
                ) from e
            raise

    def _is_cancelled(self) -> bool:
        return (self.cancel is not None and self.cancel.cancelled) or self._closed

    def _cancelled_error(self) -> CancelledError:
        reason = self.cancel.reason if self.cancel is not None and self.cancel.cancelled else "cancelled"
        message = "Request deadline exceeded" if reason == "deadline" else "Stream cancelled"
        return CancelledError(message, reason=reason, attempts=self.attempts)

    def _raise_if_cancelled(self):
        if self._is_cancelled():
            raise self._cancelled_error()

    def _on_cancel(self):
        logger.debug("Stream cancelled, closing channel")
        self._close_channel()

    def _close_channel(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True

        self.decoder.close()
        _shutdown_socket(self.channel)
        self.channel.close()

    def collect(self) -> List[Any]:
        """Consume the remaining chunks into a list."""
        return list(self)

    def close(self):
        """Close the connection and discard any partial event."""
        self._finished = True
        self._close_channel()
        if self.cancel is not None:
            self.cancel.remove_callback(self._on_cancel)
            if self._owns_cancel:
                self.cancel.dispose()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        if not getattr(self, "_closed", True):
            self.close()

    def __repr__(self) -> str:
        return (
            f"ChunkStream(status={self.status}, chunks={self.chunks_received}, "
            f"done={self.done}, closed={self._closed})"
        )
