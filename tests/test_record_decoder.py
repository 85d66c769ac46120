from typing import Any, AsyncGenerator
import random

import msgpack
import pytest

from td_job_results.errors import CorruptStream, DecodeErrorKind, TruncatedRecord
from td_job_results.record_decoder import IncrementalRecordProcessor, RecordDecoder

ROWS: list[Any] = [
    [1, "alice", None, 3.5],
    [2, "bob", True, -7],
    {"time": 1700000000, "tags": ["a", "b"], "nested": {"k": [1, 2, 3]}},
    "a plain string",
    2**40,
    b"\x00\x01 binary",
    ["x" * 5000, list(range(300))],
    [],
]

PAYLOAD = b"".join(msgpack.packb(row) for row in ROWS)


def split(data: bytes, sizes: list[int]) -> list[bytes]:
    fragments = []
    pos = 0
    i = 0
    while pos < len(data):
        size = sizes[i % len(sizes)]
        fragments.append(data[pos : pos + size])
        pos += size
        i += 1
    return fragments


def decode_all(fragments: list[bytes]) -> list[Any]:
    decoder = RecordDecoder()
    records = []
    for fragment in fragments:
        records.extend(decoder.feed(fragment))
    decoder.finish()
    return records


async def fragments_gen(fragments: list[bytes]) -> AsyncGenerator[bytes, None]:
    for fragment in fragments:
        yield fragment


def test_single_fragment():
    assert decode_all([PAYLOAD]) == ROWS


@pytest.mark.parametrize("sizes", [[1], [2], [3], [7], [100], [4096], [1, 1000, 2, 13]])
def test_fragmentation_independence(sizes):
    assert decode_all(split(PAYLOAD, sizes)) == ROWS


def test_random_fragmentation_independence():
    rng = random.Random(42)
    for _ in range(50):
        sizes = [rng.randint(1, 64) for _ in range(rng.randint(1, 10))]
        assert decode_all(split(PAYLOAD, sizes)) == ROWS


def test_record_spanning_fragments():
    row = ["y" * 1000]
    data = msgpack.packb(row)
    decoder = RecordDecoder()

    for byte in data[:-1]:
        assert list(decoder.feed(bytes([byte]))) == []
    assert decoder.pending == len(data) - 1

    assert list(decoder.feed(data[-1:])) == [row]
    assert decoder.pending == 0
    decoder.finish()


def test_fragment_completing_many_records():
    decoder = RecordDecoder()
    first = msgpack.packb([1, 2])
    second = msgpack.packb([3, 4])
    third = msgpack.packb([5, 6])

    assert list(decoder.feed(first[:2])) == []
    assert list(decoder.feed(first[2:] + second + third[:1])) == [[1, 2], [3, 4]]
    assert decoder.pending == 1
    assert list(decoder.feed(third[1:])) == [[5, 6]]
    assert decoder.records == 3


def test_truncated_record():
    decoder = RecordDecoder()
    # A bin8 header declaring 100 bytes, followed by only 40 of them.
    assert list(decoder.feed(b"\xc4\x64" + b"x" * 40)) == []

    with pytest.raises(TruncatedRecord) as exc_info:
        decoder.finish()

    assert exc_info.value.pending == 42
    assert exc_info.value.kind == DecodeErrorKind.TRUNCATED_RECORD


def test_truncated_after_complete_records():
    data = msgpack.packb([1]) + msgpack.packb({"a": 1})[:-1]
    decoder = RecordDecoder()

    assert list(decoder.feed(data)) == [[1]]
    with pytest.raises(TruncatedRecord):
        decoder.finish()


def test_empty_stream():
    decoder = RecordDecoder()
    decoder.finish()
    assert decoder.records == 0


def test_invalid_byte_is_corrupt_stream():
    decoder = RecordDecoder()
    records = decoder.feed(msgpack.packb("ok") + b"\xc1")

    assert next(records) == "ok"
    with pytest.raises(CorruptStream):
        next(records)


def test_backlog_limit():
    decoder = RecordDecoder(max_buffer_size=16)
    with pytest.raises(CorruptStream, match="maximum buffer size"):
        list(decoder.feed(msgpack.packb("z" * 64)))


def test_feed_after_finish():
    decoder = RecordDecoder()
    decoder.finish()
    with pytest.raises(RuntimeError):
        decoder.feed(b"\x01")


@pytest.mark.asyncio
async def test_incremental_record_processor():
    processor = IncrementalRecordProcessor(fragments_gen(split(PAYLOAD, [5, 17])))
    records = [record async for record in processor]

    assert records == ROWS
    assert processor.done
    assert processor.decoder.records == len(ROWS)


@pytest.mark.asyncio
async def test_incremental_record_processor_truncated():
    data = msgpack.packb([1, 2]) + msgpack.packb([3, 4]) + b"\x92\x05"
    records = []

    with pytest.raises(TruncatedRecord):
        async for record in IncrementalRecordProcessor(fragments_gen(split(data, [3]))):
            records.append(record)

    assert records == [[1, 2], [3, 4]]


@pytest.mark.asyncio
async def test_incremental_record_processor_is_lazy():
    pulled = 0

    async def counting() -> AsyncGenerator[bytes, None]:
        nonlocal pulled
        for fragment in split(PAYLOAD, [1]):
            pulled += 1
            yield fragment

    processor = IncrementalRecordProcessor(counting())
    assert await anext(processor) == ROWS[0]
    assert pulled == len(msgpack.packb(ROWS[0]))
    await processor.aclose()


@pytest.mark.parametrize("sizes", [[64], [1024], [1025], [100_000]])
def test_small_records_in_fragments_larger_than_buffer(sizes):
    rows = [[i, "abcdefgh"] for i in range(200)]
    data = b"".join(msgpack.packb(row) for row in rows)
    assert len(data) > 1024

    decoder = RecordDecoder(max_buffer_size=1024)
    records = []
    for fragment in split(data, sizes):
        records.extend(decoder.feed(fragment))
    decoder.finish()

    assert records == rows
    assert decoder.pending == 0


def test_record_larger_than_buffer_in_many_fragments():
    decoder = RecordDecoder(max_buffer_size=64)
    data = msgpack.packb([1]) + msgpack.packb("z" * 100)

    with pytest.raises(CorruptStream, match="maximum buffer size"):
        for fragment in split(data, [10]):
            list(decoder.feed(fragment))
    assert decoder.records == 1
