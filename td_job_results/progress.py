import inspect
from typing import AsyncGenerator, Awaitable, Callable

ProgressCallback = Callable[[int], None | Awaitable[None]]


class ProgressTracker:
    """
    Counts the compressed bytes of a fragment stream as it is consumed.

    Fragments are passed through unchanged and in order. `compressed_bytes`
    is updated before a fragment is handed downstream, so any record decoded
    from that fragment observes a count which includes it. The optional
    `on_fragment` callback receives the running total after each fragment.
    """

    def __init__(
        self,
        input: AsyncGenerator[bytes, None],
        on_fragment: ProgressCallback | None = None,
    ):
        self.input = input
        self.on_fragment = on_fragment
        self.compressed_bytes = 0
        self.fragments = 0
        self._stream_iter: AsyncGenerator[bytes, None] | None = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._stream_iter is None:
            self._stream_iter = self._stream()
        return await anext(self._stream_iter)

    async def aclose(self) -> None:
        if self._stream_iter is not None:
            await self._stream_iter.aclose()
        if (aclose := getattr(self.input, "aclose", None)) is not None:
            await aclose()

    async def _stream(self) -> AsyncGenerator[bytes, None]:
        async for fragment in self.input:
            if not fragment:
                continue

            self.compressed_bytes += len(fragment)
            self.fragments += 1

            if self.on_fragment is not None:
                result = self.on_fragment(self.compressed_bytes)
                if inspect.isawaitable(result):
                    await result

            yield fragment
