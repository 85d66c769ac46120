from dataclasses import dataclass, field
from logging import Logger
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, TypeVar
import abc
import aiohttp
import asyncio

from .decompression import DecompressionStrategy, open_decompressor, resolve_encoding
from .utils import format_error_message


DEFAULT_AUTHORIZATION_HEADER = "Authorization"
DEFAULT_AUTHORIZATION_TOKEN_TYPE = "TD1"

T = TypeVar("T")


class Headers(dict[str, Any]):
    """Response headers. Lookups through `get_header` ignore case."""

    def get_header(self, name: str, default: Any = None) -> Any:
        lowered = name.lower()
        for k, v in self.items():
            if k.lower() == lowered:
                return v
        return default


BodyGeneratorFunction = Callable[[], AsyncGenerator[bytes, None]]
HeadersAndBodyGenerator = tuple[Headers, BodyGeneratorFunction]


async def _no_release() -> None:
    return None


@dataclass
class FragmentSource:
    """
    FragmentSource is an HTTP response whose status and headers have been
    received but whose body has not been read. `body()` yields the raw body
    fragments exactly as they arrive from the transport: no decompression
    is applied. `release()` returns the connection, and is safe to call
    whether or not the body was consumed.
    """

    status: int
    headers: Headers
    body: BodyGeneratorFunction
    reason: str = ""
    release: Callable[[], Awaitable[None]] = field(default=_no_release)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HTTPError(RuntimeError):
    """
    HTTPError is an custom error class that provides the HTTP status code
    as a distinct attribute.
    """

    def __init__(self, message: str, code: int, body: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.body = body


class HTTPSession(abc.ABC):
    """
    HTTPSession is an abstract base class for an HTTP client implementation.
    Implementations should manage retries, authorization, and other details.

    `request` only returns "success" responses: failures throw an
    HTTPError if they cannot be retried. Its body is
    decompressed according to the response's Content-Encoding.

    `open_response` returns any response as a FragmentSource, leaving
    judgement of the status and decoding of the body to the caller.

    HTTPSession is implemented by HTTPMixin.

    Common parameters of request methods:
     * `url` to request.
     * `method` to use (GET, POST, DELETE, etc)
     * `params` are encoded as URL parameters of the query
     * `form` is a form URL-encoded request body
    """

    async def request(
        self,
        log: Logger,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        form: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> bytes:
        """Request a url and return its body as bytes"""

        chunks: list[bytes] = []
        _, body_generator = await self._request_stream(
            log, url, method, params, form, headers or {}
        )

        async for chunk in body_generator():
            chunks.append(chunk)

        if len(chunks) == 0:
            return b""
        elif len(chunks) == 1:
            return chunks[0]
        else:
            return b"".join(chunks)

    @abc.abstractmethod
    async def _request_stream(
        self,
        log: Logger,
        url: str,
        method: str,
        params: dict[str, Any] | None,
        form: dict[str, Any] | None,
        headers: dict[str, Any],
    ) -> HeadersAndBodyGenerator: ...

    @abc.abstractmethod
    async def open_response(
        self,
        log: Logger,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> FragmentSource: ...


@dataclass
class TokenSource:
    apikey: str
    authorization_header: str = DEFAULT_AUTHORIZATION_HEADER
    authorization_token_type: str = DEFAULT_AUTHORIZATION_TOKEN_TYPE

    def header_value(self) -> str:
        if self.authorization_header == DEFAULT_AUTHORIZATION_HEADER:
            return f"{self.authorization_token_type} {self.apikey}"
        return self.apikey


class RateLimiter:
    """
    RateLimiter maintains a `delay` parameter, which is the number of seconds
    to wait before issuing an HTTP request. It attempts to achieve a low rate
    of HTTP 429 (Rate Limit Exceeded) errors (under 5%) while fully utilizing
    the available rate limit without excessively long delays due to more
    traditional exponential back-off strategies.

    It initially uses quadratic decrease of `delay` until a first failure is
    encountered. Additional failures result in quadratic increase, while
    successes apply a linear decay.

    To avoid excessively long delays, `delay` cannot grow larger than `MAX_DELAY`.
    """

    MAX_DELAY: float = 300.0  # 5 minutes

    def __init__(self, delay: float = 0.0, gain: float = 0.01):
        self.delay = delay
        self.gain = gain
        self.failed = 0
        self.total = 0

    def update(self, cur_delay: float, failed: bool):
        self.total += 1
        update: float

        if failed:
            update = max(cur_delay * 4.0, 0.1)
            self.failed += 1
        elif self.failed == 0:
            update = cur_delay / 2.0
        else:
            update = cur_delay * (1 - self.gain)

        self.delay = (1 - self.gain) * self.delay + self.gain * update
        self.delay = min(self.delay, self.MAX_DELAY)

    @property
    def error_ratio(self) -> float:
        return self.failed / self.total if self.total else 0.0


class Mixin(abc.ABC):
    """
    A Mixin implements a utility on behalf of a client. It's entered before
    any request is made and exited once all requests have completed.
    """

    async def _mixin_enter(self, log: Logger): ...
    async def _mixin_exit(self, log: Logger): ...


# HTTPMixin is an opinionated implementation of HTTPSession.
class HTTPMixin(Mixin, HTTPSession):
    inner: aiohttp.ClientSession
    rate_limiter: RateLimiter
    token_source: TokenSource | None = None
    user_agent: str | None = None
    max_server_error_attempts: int = 3

    async def _mixin_enter(self, _: Logger):
        # Bodies are decompressed by the caller, fragment by fragment, so the
        # transport must hand over the bytes exactly as they were sent.
        self.inner = aiohttp.ClientSession(auto_decompress=False)
        self.rate_limiter = RateLimiter()
        return self

    async def _mixin_exit(self, _: Logger):
        await self.inner.close()
        return self

    async def _establish_connection_and_get_response(
        self,
        url: str,
        method: str,
        params: dict[str, Any] | None,
        form: dict[str, Any] | None,
        headers: dict[str, Any],
    ) -> aiohttp.ClientResponse:
        headers = dict(headers)
        if self.token_source is not None:
            headers[self.token_source.authorization_header] = self.token_source.header_value()
        if self.user_agent:
            headers.setdefault("User-Agent", self.user_agent)

        return await self.inner.request(
            headers=headers,
            data=form,
            method=method,
            params=params,
            url=url,
        )

    async def _retry_on_connection_error(
        self,
        log: Logger,
        url: str,
        method: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        max_attempts = 3
        attempt = 1

        while True:
            try:
                return await operation()
            except (
                asyncio.TimeoutError,                # Connection timeouts
                aiohttp.ClientConnectorError,        # DNS, SSL handshake, connection refused errors
                aiohttp.ConnectionTimeoutError,      # aiohttp connection timeouts (sock_connect, connect)
                ConnectionResetError,                # TCP connection reset
                aiohttp.ClientOSError,               # OS errors (like BrokenPipeError) during request sending
            ) as e:
                if attempt <= max_attempts:
                    log.warning(
                        "Connection error occurred while establishing connection (will retry)",
                        {"url": url, "method": method, "attempt": attempt, "error": format_error_message(e)}
                    )
                    attempt += 1
                else:
                    raise

    async def _send(
        self,
        log: Logger,
        url: str,
        method: str,
        params: dict[str, Any] | None,
        form: dict[str, Any] | None,
        headers: dict[str, Any],
    ) -> aiohttp.ClientResponse:
        """Send a request, waiting out HTTP 429 responses with the rate limiter."""
        while True:
            cur_delay = self.rate_limiter.delay
            if cur_delay > 0:
                await asyncio.sleep(cur_delay)

            resp = await self._retry_on_connection_error(
                log, url, method,
                lambda: self._establish_connection_and_get_response(
                    url, method, params, form, headers,
                )
            )

            self.rate_limiter.update(cur_delay, resp.status == 429)
            if resp.status != 429:
                return resp

            await resp.release()
            if self.rate_limiter.error_ratio > 0.05:
                log.warning(
                    "rate limit errors are elevated",
                    {
                        "delay": self.rate_limiter.delay,
                        "failed": self.rate_limiter.failed,
                        "total": self.rate_limiter.total,
                    },
                )

    async def open_response(
        self,
        log: Logger,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> FragmentSource:
        resp = await self._send(log, url, method, params, None, headers or {})

        async def body_generator() -> AsyncGenerator[bytes, None]:
            try:
                async for chunk in resp.content.iter_any():
                    yield chunk
            finally:
                await resp.release()

        async def release() -> None:
            await resp.release()

        return FragmentSource(
            status=resp.status,
            headers=Headers({k: v for k, v in resp.headers.items()}),
            body=body_generator,
            reason=resp.reason or "",
            release=release,
        )

    async def _request_stream(
        self,
        log: Logger,
        url: str,
        method: str,
        params: dict[str, Any] | None,
        form: dict[str, Any] | None,
        headers: dict[str, Any],
    ) -> HeadersAndBodyGenerator:
        attempt = 1
        while True:
            resp = await self._send(log, url, method, params, form, headers)

            should_release_response = True
            try:
                if 500 <= resp.status < 600 and attempt < self.max_server_error_attempts:
                    body = await resp.read()
                    log.warning(
                        "server internal error (will retry)",
                        {"url": url, "attempt": attempt, "body": body.decode("utf-8", errors="replace")},
                    )
                    attempt += 1
                elif resp.status >= 400:
                    body = (await resp.read()).decode("utf-8", errors="replace")
                    raise HTTPError(
                        f"Encountered HTTP error status {resp.status} which cannot be retried.\nURL: {url}\nResponse:\n{body}",
                        resp.status,
                        body,
                    )
                else:
                    response_headers = Headers({k: v for k, v in resp.headers.items()})
                    encoding = resolve_encoding(
                        response_headers.get_header("Content-Encoding"),
                        DecompressionStrategy.EXPLICIT,
                    )

                    async def raw_body() -> AsyncGenerator[bytes, None]:
                        try:
                            async for chunk in resp.content.iter_any():
                                yield chunk
                        finally:
                            await resp.release()

                    async def body_generator() -> AsyncGenerator[bytes, None]:
                        async with open_decompressor(raw_body(), encoding) as decompressed:
                            async for chunk in decompressed:
                                yield chunk

                    should_release_response = False
                    return (response_headers, body_generator)

            finally:
                if should_release_response:
                    await resp.release()


class TDSession(HTTPMixin):
    """
    TDSession is a ready-to-use HTTPMixin. Use it as an async context manager:

    ```python
    async with TDSession(TokenSource(apikey)) as http:
        ...
    ```
    """

    def __init__(
        self,
        token_source: TokenSource | None = None,
        user_agent: str | None = None,
        log: Logger | None = None,
    ):
        self.token_source = token_source
        self.user_agent = user_agent
        self._log = log

    async def __aenter__(self):
        self._log = self._log or logging.getLogger(__name__)
        await self._mixin_enter(self._log)
        return self

    async def __aexit__(self, *exc_info):
        assert self._log is not None
        await self._mixin_exit(self._log)
