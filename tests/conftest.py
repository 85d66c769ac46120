import logging
from typing import Any, AsyncGenerator

import pytest

from td_job_results.config import ClientConfig
from td_job_results.http import (
    FragmentSource,
    Headers,
    HeadersAndBodyGenerator,
    HTTPError,
    HTTPSession,
)


async def bytes_gen(data: bytes, chunk_size: int = 10) -> AsyncGenerator[bytes, None]:
    for i in range(0, len(data), chunk_size):
        yield data[i : i + chunk_size]


class FakeResponse:
    def __init__(
        self,
        status: int,
        fragments: list[bytes],
        headers: dict[str, str] | None = None,
        reason: str = "",
    ):
        self.status = status
        self.fragments = fragments
        self.headers = headers or {}
        self.reason = reason
        self.body_opened = 0
        self.fragments_read = 0
        self.body_closed = False
        self.released = False

    def body(self) -> AsyncGenerator[bytes, None]:
        self.body_opened += 1

        async def gen() -> AsyncGenerator[bytes, None]:
            try:
                for fragment in self.fragments:
                    self.fragments_read += 1
                    yield fragment
            finally:
                self.body_closed = True

        return gen()

    async def release(self) -> None:
        self.released = True


class FakeSession(HTTPSession):
    """An HTTPSession serving canned responses keyed by URL path."""

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.responses: dict[str, FakeResponse] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, path: str, response: FakeResponse) -> FakeResponse:
        self.responses[path] = response
        return response

    def _lookup(self, url: str) -> FakeResponse:
        assert url.startswith(self.base_url), url
        return self.responses[url[len(self.base_url):]]

    async def _request_stream(
        self,
        log: logging.Logger,
        url: str,
        method: str,
        params: dict[str, Any] | None,
        form: dict[str, Any] | None,
        headers: dict[str, Any],
    ) -> HeadersAndBodyGenerator:
        self.calls.append({"url": url, "method": method, "params": params, "form": form})
        response = self._lookup(url)
        if response.status >= 400:
            body = b"".join(response.fragments).decode()
            raise HTTPError(f"HTTP {response.status}", response.status, body)
        return (Headers(response.headers), response.body)

    async def open_response(
        self,
        log: logging.Logger,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> FragmentSource:
        self.calls.append({"url": url, "method": method, "params": params})
        response = self._lookup(url)
        return FragmentSource(
            status=response.status,
            headers=Headers(response.headers),
            body=response.body,
            reason=response.reason,
            release=response.release,
        )


@pytest.fixture
def log() -> logging.Logger:
    return logging.getLogger("td_job_results.tests")


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(apikey="1/abcdef", endpoint="api.example.com")


@pytest.fixture
def session(config: ClientConfig) -> FakeSession:
    return FakeSession(config.base_url)
