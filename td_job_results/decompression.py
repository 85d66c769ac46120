import zlib
from enum import StrEnum
from typing import Any, AsyncGenerator, AsyncIterator, Iterator

from .errors import CorruptStream

# Upper bound on the size of a single decompressed output fragment.
MAX_OUTPUT_SIZE = 1024 * 1024


class ContentEncoding(StrEnum):
    NONE = "none"
    GZIP = "gzip"
    DEFLATE = "deflate"


class DecompressionStrategy(StrEnum):
    """
    How a response's Content-Encoding header selects a decompressor.

    EXPLICIT decompresses only when the header names an encoding: no header
    means the body is passed through unchanged.

    ASSUME_GZIP treats the body as always compressed: no header means gzip,
    and any other encoding name means a windowed deflate stream.
    """

    EXPLICIT = "explicit"
    ASSUME_GZIP = "assume_gzip"


_GZIP_NAMES = ("gzip", "x-gzip")
_IDENTITY_NAMES = ("identity", "none")


def resolve_encoding(
    header: str | None, strategy: DecompressionStrategy
) -> ContentEncoding:
    value = (header or "").strip().lower()

    if value in _IDENTITY_NAMES:
        return ContentEncoding.NONE
    if value in _GZIP_NAMES:
        return ContentEncoding.GZIP

    match strategy:
        case DecompressionStrategy.EXPLICIT:
            return ContentEncoding.DEFLATE if value else ContentEncoding.NONE
        case DecompressionStrategy.ASSUME_GZIP:
            return ContentEncoding.DEFLATE if value else ContentEncoding.GZIP
        case _:
            raise ValueError(f"unknown decompression strategy: {strategy}")


async def _aclose(gen: Any) -> None:
    if (aclose := getattr(gen, "aclose", None)) is not None:
        await aclose()


class Decompressor:
    """
    Decompressor incrementally decodes a stream of compressed fragments from
    an async generator. Each fragment is fed to the underlying decompressor
    exactly once and only non-empty output is yielded, so fragment boundaries
    may fall anywhere in the compressed stream.

    Usage:
      async with open_decompressor(body(), ContentEncoding.GZIP) as stream:
          async for chunk in stream:
              ... # process decompressed bytes

    Leaving the `async with` block (or calling `aclose()`) drops the
    decompression state and closes the input generator, whether or not the
    stream was fully consumed.
    """

    encoding: ContentEncoding = ContentEncoding.NONE

    def __init__(self, input: AsyncGenerator[bytes, None]):
        self.input = input
        self.done = False
        self._stream_iter: AsyncGenerator[bytes, None] | None = None
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        if self._stream_iter is None:
            self._stream_iter = self._stream()

        try:
            return await anext(self._stream_iter)
        except StopAsyncIteration:
            self.done = True
            raise

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        self._closed = True
        if self._stream_iter is not None:
            await self._stream_iter.aclose()
        await _aclose(self.input)

    async def _stream(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.input:
                if chunk:
                    yield chunk
        finally:
            await _aclose(self.input)


class PassThrough(Decompressor):
    pass


class _ZlibDecompressor(Decompressor):
    wbits: int

    def __init__(
        self,
        input: AsyncGenerator[bytes, None],
        max_output_size: int = MAX_OUTPUT_SIZE,
    ):
        super().__init__(input)
        self.max_output_size = max_output_size
        self.state: Any = zlib.decompressobj(wbits=self.wbits)

    async def aclose(self) -> None:
        try:
            await super().aclose()
        finally:
            self.state = None

    def _inflate(self, chunk: bytes) -> Iterator[bytes]:
        # Output is capped per call. A full-sized result may leave input in
        # unconsumed_tail or output pending inside zlib.
        while True:
            try:
                data = self.state.decompress(chunk, self.max_output_size)
            except zlib.error as err:
                raise CorruptStream(f"invalid {self.encoding} data: {err}") from err

            if data:
                yield data

            chunk = self.state.unconsumed_tail
            if not chunk and len(data) < self.max_output_size:
                return

    async def _stream(self) -> AsyncIterator[bytes]:
        received = 0
        try:
            async for chunk in self.input:
                if not chunk:
                    continue
                received += len(chunk)

                if self.state.eof:
                    raise CorruptStream(
                        f"{len(chunk)} unexpected bytes after the end of the {self.encoding} stream"
                    )

                for data in self._inflate(chunk):
                    yield data

                if self.state.unused_data:
                    raise CorruptStream(
                        f"{len(self.state.unused_data)} unexpected bytes after the end of the {self.encoding} stream"
                    )

            # An empty body carries no compressed stream at all.
            if received == 0:
                return

            try:
                leftover = self.state.flush()
            except zlib.error as err:
                raise CorruptStream(f"invalid {self.encoding} data: {err}") from err

            if leftover:
                yield leftover

            if not self.state.eof:
                raise CorruptStream(
                    f"truncated {self.encoding} stream after {received} compressed bytes"
                )
        finally:
            self.state = None
            await _aclose(self.input)


class GzipDecompressor(_ZlibDecompressor):
    encoding = ContentEncoding.GZIP
    # Expect the gzip container (header and trailer), not a raw deflate stream.
    wbits = 16 + zlib.MAX_WBITS


class DeflateDecompressor(_ZlibDecompressor):
    encoding = ContentEncoding.DEFLATE
    wbits = zlib.MAX_WBITS


def open_decompressor(
    input: AsyncGenerator[bytes, None], encoding: ContentEncoding
) -> Decompressor:
    match encoding:
        case ContentEncoding.NONE:
            return PassThrough(input)
        case ContentEncoding.GZIP:
            return GzipDecompressor(input)
        case ContentEncoding.DEFLATE:
            return DeflateDecompressor(input)
        case _:
            raise ValueError(f"unsupported content encoding: {encoding}")
