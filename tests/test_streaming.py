import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from conftest import BlockingChannel, FakeChannel
from venice.api.cancellation import CancellationToken
from venice.api.streaming import END_OF_STREAM, ChunkStream, StreamBuffer, StreamDecoder
from venice.exceptions import CancelledError, DecodeError, TransportError
from venice.models import ChatCompletionChunk

SAMPLE = (
    b": keep-alive\r\n"
    b"id: 1\r\n"
    b"event: message\r\n"
    b'data: {"n": 1, "s": "\xc3\xa9"}\r\n'
    b"\r\n"
    b'data:{"n": 2}\r\r'
    b'data: {"n":\n'
    b"data: 3}\n"
    b"\n"
    b"data: [DONE]\n\n"
)
EXPECTED = [{"n": 1, "s": "é"}, {"n": 2}, {"n": 3}]


def decode_all(chunks, parse=None):
    return list(StreamDecoder(parse=parse).iter_chunks(chunks))


def chunk_event(index, content):
    return (
        'data: {"id": "c1", "object": "chat.completion.chunk", "model": "m", '
        '"choices": [{"index": 0, "delta": {"content": "%s"}}]}\n\n' % content
    ).encode("utf-8")


def test_decodes_whole_stream():
    assert decode_all([SAMPLE]) == EXPECTED


@pytest.mark.parametrize("split", range(len(SAMPLE) + 1))
def test_result_is_independent_of_chunk_boundaries(split):
    assert decode_all([SAMPLE[:split], SAMPLE[split:]]) == EXPECTED


def test_byte_at_a_time():
    assert decode_all([SAMPLE[i:i + 1] for i in range(len(SAMPLE))]) == EXPECTED


def test_sentinel_ends_decoding():
    decoder = StreamDecoder()
    decoder.feed(b'data: {"a": 1}\n\ndata: [DONE]\n\ndata: {"a": 2}\n\n')

    assert decoder.next_item() == {"a": 1}
    assert decoder.next_item() is END_OF_STREAM
    assert decoder.next_item() is None
    assert decoder.closed

    decoder.feed(b'data: {"a": 3}\n\n')
    assert decoder.next_item() is None


def test_unterminated_event_is_discarded_at_end():
    decoder = StreamDecoder()
    decoder.feed(b'data: {"a": 1}\n\ndata: {"a": 2}\n')
    decoder.finish()

    assert decoder.next_item() == {"a": 1}
    assert decoder.next_item() is None
    assert decoder.closed


def test_trailing_carriage_return_waits_for_next_byte():
    decoder = StreamDecoder()
    decoder.feed(b'data: {"a": 1}\r\r')

    assert decoder.next_item() is None
    assert not decoder.closed

    decoder.finish()
    assert decoder.next_item() == {"a": 1}


def test_split_crlf_is_one_line_ending():
    decoder = StreamDecoder()
    decoder.feed(b'data: {"a": 1}\r')
    assert decoder.next_item() is None

    decoder.feed(b'\n\r')
    assert decoder.next_item() is None

    decoder.feed(b'\n')
    assert decoder.next_item() == {"a": 1}


def test_events_without_data_are_ignored():
    assert decode_all([b"event: ping\n\n: comment\n\nretry: 100\n\n"]) == []


@pytest.mark.parametrize("payload", [
    b"data: {not json}\n\n",
    b"data: \xff\xfe\n\n",
])
def test_malformed_event_raises_and_closes(payload):
    decoder = StreamDecoder()
    decoder.feed(payload)

    with pytest.raises(DecodeError):
        decoder.next_item()
    assert decoder.closed
    assert decoder.next_item() is None


def test_parse_failure_is_decode_error():
    decoder = StreamDecoder(parse=ChatCompletionChunk.from_dict)
    decoder.feed(b'data: {"choices": []}\n\n')

    with pytest.raises(DecodeError) as exc_info:
        decoder.next_item()
    assert "KeyError" in str(exc_info.value)


def test_buffer_take_line():
    buffer = StreamBuffer()
    buffer.add_chunk(b"one\ntwo\r\nthree")

    assert buffer.take_line() == b"one"
    assert buffer.take_line() == b"two"
    assert buffer.take_line() is None
    assert buffer.has_pending
    assert buffer.total_bytes == 14

    buffer.add_chunk(b"\r")
    assert buffer.take_line() is None
    assert buffer.take_line(final=True) == b"three"
    assert not buffer.has_pending


def test_chunk_stream_yields_typed_chunks():
    channel = FakeChannel([chunk_event(0, "Hel"), chunk_event(1, "lo"), b"data: [DONE]\n\n"])
    stream = ChunkStream(channel, StreamDecoder(parse=ChatCompletionChunk.from_dict), status=200)

    chunks = stream.collect()

    assert [chunk.text for chunk in chunks] == ["Hel", "lo"]
    assert stream.done
    assert stream.chunks_received == 2
    assert channel.closed


def test_chunk_stream_without_sentinel_ends_normally():
    channel = FakeChannel([b'data: {"a": 1}\n\n', b'data: {"a": 2}\n'])
    stream = ChunkStream(channel, StreamDecoder())

    assert list(stream) == [{"a": 1}]
    assert not stream.done
    assert channel.closed


def test_chunk_stream_reads_lazily():
    served = []

    class CountingChannel(FakeChannel):
        def iter_content(self, chunk_size=None):
            for chunk in self.chunks:
                served.append(chunk)
                yield chunk

    channel = CountingChannel([b'data: {"a": 1}\n\n', b'data: {"a": 2}\n\n', b"data: [DONE]\n\n"])
    stream = ChunkStream(channel, StreamDecoder())

    assert next(stream) == {"a": 1}
    assert len(served) == 1
    stream.close()


def test_decode_error_is_terminal():
    channel = FakeChannel([b'data: {"a": 1}\n\n', b"data: oops\n\n", b'data: {"a": 2}\n\n'])
    stream = ChunkStream(channel, StreamDecoder())

    assert next(stream) == {"a": 1}
    with pytest.raises(DecodeError):
        next(stream)
    with pytest.raises(StopIteration):
        next(stream)
    assert channel.closed


def test_connection_drop_mid_stream_is_transport_error():
    error = requests.exceptions.ChunkedEncodingError("connection broken")
    channel = FakeChannel([b'data: {"a": 1}\n\n'], error=error)
    stream = ChunkStream(channel, StreamDecoder(), attempts=2)

    assert next(stream) == {"a": 1}
    with pytest.raises(TransportError) as exc_info:
        next(stream)
    assert exc_info.value.original_error is error
    assert exc_info.value.attempts == 2


def test_close_mid_stream():
    channel = FakeChannel([b'data: {"a": 1}\n\n', b'data: {"a": 2}\n\n'])
    stream = ChunkStream(channel, StreamDecoder())

    assert next(stream) == {"a": 1}
    stream.close()

    assert channel.closed
    assert list(stream) == []


def test_cancelled_token_stops_stream():
    token = CancellationToken()
    channel = FakeChannel([b'data: {"a": 1}\n\n', b'data: {"a": 2}\n\n'])
    stream = ChunkStream(channel, StreamDecoder(), cancel=token)

    assert next(stream) == {"a": 1}
    token.cancel()

    assert channel.closed
    with pytest.raises(CancelledError) as exc_info:
        next(stream)
    assert exc_info.value.reason == "cancelled"


def test_deadline_interrupts_pending_read():
    token = CancellationToken(timeout=0.2)
    channel = BlockingChannel([b'data: {"a": 1}\n\n'])
    stream = ChunkStream(channel, StreamDecoder(), cancel=token, owns_cancel=True)

    assert next(stream) == {"a": 1}

    started = time.monotonic()
    with pytest.raises(CancelledError) as exc_info:
        next(stream)

    assert time.monotonic() - started < 2
    assert exc_info.value.reason == "deadline"
    assert channel.closed


def test_cancel_from_another_thread_interrupts_read():
    token = CancellationToken()
    channel = BlockingChannel()
    stream = ChunkStream(channel, StreamDecoder(), cancel=token)

    threading.Timer(0.1, token.cancel).start()

    with pytest.raises(CancelledError):
        next(stream)
    assert stream.closed


class HeldStreamHandler(BaseHTTPRequestHandler):
    """Sends one chunked event, then holds the connection open."""

    protocol_version = "HTTP/1.1"

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Transfer-Encoding", "chunked")
        self.end_headers()
        event = b'data: {"a": 1}\n\n'
        self.wfile.write(b"%x\r\n%s\r\n" % (len(event), event))
        self.wfile.flush()
        self.server.release.wait(10)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def held_stream_url():
    server = ThreadingHTTPServer(("127.0.0.1", 0), HeldStreamHandler)
    server.daemon_threads = True
    server.release = threading.Event()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{server.server_port}/stream"

    server.release.set()
    server.shutdown()
    server.server_close()


def test_cancel_interrupts_blocked_socket_read(held_stream_url):
    token = CancellationToken()
    response = requests.get(held_stream_url, stream=True, timeout=20)
    stream = ChunkStream(response, StreamDecoder(), cancel=token)

    assert next(stream) == {"a": 1}

    threading.Timer(0.2, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(CancelledError) as exc_info:
        next(stream)

    assert time.monotonic() - started < 5
    assert exc_info.value.reason == "cancelled"
    assert stream.closed


def test_close_channel_without_socket_is_harmless():
    channel = FakeChannel([b'data: {"a": 1}\n\n'])
    stream = ChunkStream(channel, StreamDecoder())

    stream.close()

    assert channel.closed
