"""Shared fixtures for memctl client tests."""

import json

import httpx
import pytest

from memctl.client import SyncClient
from memctl.config import ClientConfig

BASE_URL = "http://memctl.test/api/v1"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAPI:
    """Records requests and answers them from a handler function."""

    def __init__(self, handler=None):
        self.requests: list[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, json={}))
        self.offline = False

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if (method is None or r.method == method)
            and (path is None or api_path(r) == path)
        ]


def api_path(request: httpx.Request) -> str:
    """Request path relative to the API base, including the query string."""
    raw = request.url.raw_path.decode()
    return raw[len("/api/v1") :]


def json_body(request: httpx.Request):
    return json.loads(request.content) if request.content else None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return ClientConfig(
        base_url=BASE_URL + "/",
        token="test-token",
        org="test-org",
        project="test-project",
        cache_dir=tmp_path / "memctl",
        durable_cache=False,
    )


@pytest.fixture
def api():
    return FakeAPI()


@pytest.fixture
def make_client(config, api, clock):
    """Factory for clients wired to the fake API."""

    def _make(**kwargs) -> SyncClient:
        kwargs.setdefault("transport", httpx.MockTransport(api))
        kwargs.setdefault("clock", clock)
        return SyncClient(kwargs.pop("config", config), **kwargs)

    return _make
