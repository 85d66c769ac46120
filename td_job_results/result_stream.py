import inspect
from contextlib import aclosing
from enum import StrEnum
from logging import Logger
from typing import Any, AsyncGenerator, Awaitable, Callable, Protocol

from .config import DEFAULT_MAX_BUFFER_SIZE
from .decompression import (
    ContentEncoding,
    DecompressionStrategy,
    open_decompressor,
    resolve_encoding,
)
from .errors import DecodeError, RequestFailed
from .http import FragmentSource
from .progress import ProgressCallback, ProgressTracker
from .record_decoder import IncrementalRecordProcessor
from .utils import format_error_message

MAX_ERROR_BODY_SIZE = 64 * 1024

RecordHandler = Callable[[Any], None | Awaitable[None]]
RecordProgressHandler = Callable[[Any, int], None | Awaitable[None]]


class ResultFormat(StrEnum):
    MSGPACK = "msgpack"
    MSGPACK_GZ = "msgpack.gz"
    JSON = "json"
    JSON_GZ = "json.gz"
    CSV = "csv"
    CSV_GZ = "csv.gz"
    TSV = "tsv"
    TSV_GZ = "tsv.gz"


class Sink(Protocol):
    def write(self, data: bytes, /) -> Any: ...


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


async def _read_error_body(source: FragmentSource) -> str | None:
    # Error bodies are small diagnostics. A compressed one isn't worth decoding.
    if resolve_encoding(
        source.headers.get_header("Content-Encoding"), DecompressionStrategy.EXPLICIT
    ) != ContentEncoding.NONE:
        return None

    chunks: list[bytes] = []
    size = 0
    body = source.body()
    try:
        async for chunk in body:
            chunks.append(chunk)
            size += len(chunk)
            if size >= MAX_ERROR_BODY_SIZE:
                break
    finally:
        await body.aclose()

    return b"".join(chunks)[:MAX_ERROR_BODY_SIZE].decode("utf-8", errors="replace")


def _request_failed(source: FragmentSource, body: str | None = None) -> RequestFailed:
    message = f"Get job result failed: HTTP {source.status}"
    if source.reason:
        message += f" {source.reason}"
    if body:
        message += f": {body}"
    return RequestFailed(message, source.status, body)


class ResultStream:
    """
    ResultStream is one retrieval session of a job's result. It composes

        fragments -> ProgressTracker -> Decompressor -> IncrementalRecordProcessor

    over a successful response, and is consumed exactly once through one of
    `records()`, `records_with_progress()`, `raw()`, or the convenience
    methods built on them. The Content-Encoding of the response is resolved
    once, when the stream is opened.

    Prefer `open()` to construct a ResultStream, and use it as an async
    context manager so that the decompressor, the decoder and the connection
    are released however iteration ends:

    ```python
    async with await ResultStream.open(source, log) as stream:
        async for row in stream.records():
            ...
    ```
    """

    def __init__(
        self,
        source: FragmentSource,
        log: Logger,
        format: ResultFormat | str = ResultFormat.MSGPACK,
        strategy: DecompressionStrategy = DecompressionStrategy.ASSUME_GZIP,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        on_fragment: ProgressCallback | None = None,
    ):
        if not source.ok:
            raise _request_failed(source)

        self.source = source
        self.log = log
        self.format = format
        self.strategy = strategy
        self.max_buffer_size = max_buffer_size
        self.content_encoding = resolve_encoding(
            source.headers.get_header("Content-Encoding"), strategy
        )
        self.tracker = ProgressTracker(source.body(), on_fragment)
        self.decompressor = open_decompressor(self.tracker, self.content_encoding)
        self.decoder: IncrementalRecordProcessor | None = None
        self.closed = False
        self._consumed = False

        self.log.debug(
            "opened result stream",
            {
                "format": str(self.format),
                "content_encoding": str(self.content_encoding),
                "strategy": str(self.strategy),
            },
        )

    @classmethod
    async def open(
        cls,
        source: FragmentSource,
        log: Logger,
        format: ResultFormat | str = ResultFormat.MSGPACK,
        strategy: DecompressionStrategy = DecompressionStrategy.ASSUME_GZIP,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        on_fragment: ProgressCallback | None = None,
    ) -> "ResultStream":
        """
        Check the response status and start a session. A non-success status
        raises RequestFailed before any fragment is decompressed or decoded.
        """
        if not source.ok:
            try:
                body = await _read_error_body(source)
            finally:
                await source.release()

            raise _request_failed(source, body)

        return cls(source, log, format, strategy, max_buffer_size, on_fragment)

    @property
    def compressed_bytes(self) -> int:
        return self.tracker.compressed_bytes

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True

        try:
            if self.decoder is not None:
                await self.decoder.aclose()
            await self.decompressor.aclose()
        finally:
            await self.source.release()

    def _claim(self) -> None:
        if self._consumed:
            raise RuntimeError("a ResultStream can only be consumed once")
        self._consumed = True

    async def raw(self) -> AsyncGenerator[bytes, None]:
        """Yield the decompressed body of the result, without decoding records."""
        self._claim()
        try:
            async for chunk in self.decompressor:
                yield chunk
        except DecodeError as err:
            self._log_failure(err)
            raise
        finally:
            await self.aclose()

        self.log.debug(
            "finished result stream",
            {"compressed_bytes": self.compressed_bytes, "fragments": self.tracker.fragments},
        )

    async def records_with_progress(self) -> AsyncGenerator[tuple[Any, int], None]:
        """
        Yield each decoded record together with the number of compressed bytes
        received by the time the record became available.
        """
        if self.format != ResultFormat.MSGPACK:
            raise ValueError(f"records cannot be decoded from the {self.format!r} format")

        self._claim()
        self.decoder = IncrementalRecordProcessor(self.decompressor, self.max_buffer_size)
        try:
            async for record in self.decoder:
                yield record, self.tracker.compressed_bytes
        except DecodeError as err:
            self._log_failure(err)
            raise
        finally:
            await self.aclose()

        self.log.debug(
            "finished result stream",
            {
                "records": self.decoder.decoder.records,
                "compressed_bytes": self.compressed_bytes,
                "fragments": self.tracker.fragments,
            },
        )

    async def records(self) -> AsyncGenerator[Any, None]:
        async with aclosing(self.records_with_progress()) as records:
            async for record, _ in records:
                yield record

    async def collect(self) -> list[Any] | bytes:
        """Drain the stream: a list of records, or the raw bytes of a non-record format."""
        if self.format == ResultFormat.MSGPACK:
            async with aclosing(self.records()) as records:
                return [record async for record in records]

        async with aclosing(self.raw()) as chunks:
            return b"".join([chunk async for chunk in chunks])

    async def each(self, handler: RecordHandler) -> None:
        async with aclosing(self.records_with_progress()) as records:
            async for record, _ in records:
                await _maybe_await(handler(record))

    async def each_with_progress(self, handler: RecordProgressHandler) -> None:
        async with aclosing(self.records_with_progress()) as records:
            async for record, compressed_bytes in records:
                await _maybe_await(handler(record, compressed_bytes))

    async def copy_into(self, sink: Sink, progress: ProgressCallback | None = None) -> int:
        """
        Write the decompressed body to `sink.write`, which may be sync or async.
        `progress` receives the compressed byte count after each write, and once
        more at the end if trailing fragments produced no output.
        Returns the number of decompressed bytes written.
        """
        written = 0
        reported = -1
        async with aclosing(self.raw()) as chunks:
            async for chunk in chunks:
                await _maybe_await(sink.write(chunk))
                written += len(chunk)
                if progress is not None:
                    reported = self.compressed_bytes
                    await _maybe_await(progress(reported))

        if progress is not None and reported != self.compressed_bytes:
            await _maybe_await(progress(self.compressed_bytes))

        return written

    def _log_failure(self, err: DecodeError) -> None:
        self.log.warning(
            "result stream failed",
            {
                "kind": str(err.kind),
                "error": format_error_message(err),
                "compressed_bytes": self.compressed_bytes,
            },
        )
