import json
import threading

import pytest
import requests
from requests.structures import CaseInsensitiveDict

import venice.api.client as client_module
import venice.api.rate_limiting as rate_limiting_module
import venice.config as config_module
from venice.api.executor import RawResponse
from venice.constants import ENV_VARS


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep tests independent of the user's environment, config files and globals."""
    for env_var in ENV_VARS.values():
        monkeypatch.delenv(env_var, raising=False)

    monkeypatch.setattr(config_module, "_config_file_paths", lambda: [])
    monkeypatch.setattr(config_module, "_config", None)
    monkeypatch.setattr(rate_limiting_module, "_shared_tracker", None)
    monkeypatch.setattr(client_module, "_api_client", None)
    yield


def make_raw(status=200, json_body=None, body=b"", headers=None, channel=None):
    """Build a RawResponse as the executor would return it."""
    headers = CaseInsensitiveDict(headers or {})
    if json_body is not None:
        body = json.dumps(json_body).encode("utf-8")
        headers.setdefault("Content-Type", "application/json")
    return RawResponse(status=status, headers=headers, body=body,
                       url="https://api.example.test/v1/x", channel=channel)


def make_response(status=200, content=b"", headers=None, url="https://api.venice.ai/api/v1/x"):
    """Build a real requests.Response with a fixed body."""
    response = requests.Response()
    response.status_code = status
    response._content = content
    response._content_consumed = True
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    return response


class FakeExecutor:
    """
    Scripted stand-in for Executor.

    Each call to ``send`` takes the next scripted item; once the script is
    exhausted ``default`` is used. Items are RawResponse objects, exceptions
    (raised) or callables returning either.
    """

    def __init__(self, script=None, default=None, timeout=30):
        self.script = list(script or [])
        self.default = default
        self.timeout = timeout
        self.requests = []
        self.closed = False
        self._lock = threading.Lock()

    @property
    def calls(self):
        return len(self.requests)

    def send(self, request, timeout=None):
        with self._lock:
            self.requests.append(request)
            item = self.script.pop(0) if self.script else self.default

        if callable(item) and not isinstance(item, RawResponse):
            item = item()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


class FakeChannel:
    """Stand-in for a streamed requests.Response."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False
        self.status_code = 200
        self.url = "https://api.example.test/v1/chat/completions"

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            if self.closed:
                raise requests.exceptions.ConnectionError("connection closed")
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


class BlockingChannel(FakeChannel):
    """Channel whose read blocks until it is closed."""

    def __init__(self, chunks=()):
        super().__init__(chunks)
        self._closed_event = threading.Event()

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            yield chunk
        self._closed_event.wait(5)
        raise requests.exceptions.ConnectionError("connection closed")

    def close(self):
        self.closed = True
        self._closed_event.set()


@pytest.fixture
def fake_executor():
    return FakeExecutor()
