from typing import Any, AsyncGenerator, Iterator

import msgpack

from .config import DEFAULT_MAX_BUFFER_SIZE
from .errors import CorruptStream, TruncatedRecord


class RecordDecoder:
    """
    RecordDecoder turns an ordered sequence of MessagePack byte fragments
    into records. Fragments may split records anywhere: bytes which don't yet
    form a complete record are kept in a backlog and completed by later
    fragments.

    Example:
    ```python
    decoder = RecordDecoder()
    for fragment in fragments:
        for record in decoder.feed(fragment):
            handle(record)
    decoder.finish()  # Raises TruncatedRecord if a partial record remains.
    ```
    """

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE):
        self._unpacker = msgpack.Unpacker(
            raw=False,
            use_list=True,
            strict_map_key=False,
            max_buffer_size=max_buffer_size,
        )
        self.max_buffer_size = max_buffer_size
        self.fed = 0
        # Stream offset just past the last complete record.
        self._boundary = 0
        self.records = 0
        self.finished = False

    @property
    def pending(self) -> int:
        """Number of bytes in the backlog which are not yet a complete record."""
        return self.fed - self._boundary

    def feed(self, fragment: bytes) -> Iterator[Any]:
        """
        Append `fragment` to the backlog and return an iterator over the
        records it completes. The fragment is handed to the unpacker in
        slices that keep the backlog within `max_buffer_size`, draining
        records between slices, so the iterator must be exhausted before the
        next call.
        """
        if self.finished:
            raise RuntimeError("cannot feed a RecordDecoder after finish()")

        return self._feed(memoryview(fragment))

    def _feed(self, view: memoryview) -> Iterator[Any]:
        while view:
            room = self.max_buffer_size - self.pending
            if room <= 0:
                raise CorruptStream(
                    f"record exceeds the maximum buffer size of {self.max_buffer_size} bytes"
                )

            piece, view = view[:room], view[room:]
            try:
                self._unpacker.feed(piece)
            except msgpack.BufferFull as err:
                raise CorruptStream(
                    f"record exceeds the maximum buffer size of {self.max_buffer_size} bytes"
                ) from err
            self.fed += len(piece)

            yield from self._drain()

    def _drain(self) -> Iterator[Any]:
        while True:
            try:
                record = next(self._unpacker)
            except StopIteration:
                return
            except (msgpack.UnpackException, ValueError) as err:
                raise CorruptStream(
                    f"invalid record data after byte offset {self._boundary}: {err}"
                ) from err

            self._boundary = self._unpacker.tell()
            self.records += 1
            yield record

    def finish(self) -> None:
        self.finished = True
        if pending := self.pending:
            raise TruncatedRecord(
                f"stream ended with {pending} bytes of an incomplete record", pending
            )


class IncrementalRecordProcessor:
    """
    Processes a stream of decompressed MessagePack bytes incrementally,
    yielding each record as soon as its last byte has arrived. All records
    completed by a fragment are yielded before the next fragment is read.

    Example usage:
    ```python
    async for row in IncrementalRecordProcessor(GzipDecompressor(body())):
        do_something_with(row)
    ```
    """

    def __init__(
        self,
        input: AsyncGenerator[bytes, None],
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    ):
        self.input = input
        self.decoder = RecordDecoder(max_buffer_size)
        self.done = False
        self._processor: AsyncGenerator[Any, None] | None = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        if self._processor is None:
            self._processor = self._process()

        try:
            return await anext(self._processor)
        except StopAsyncIteration:
            self.done = True
            raise

    async def aclose(self) -> None:
        if self._processor is not None:
            await self._processor.aclose()

    async def _process(self) -> AsyncGenerator[Any, None]:
        async for fragment in self.input:
            for record in self.decoder.feed(fragment):
                yield record

        self.decoder.finish()
