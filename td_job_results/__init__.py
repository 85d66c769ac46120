from .config import ClientConfig
from .decompression import (
    ContentEncoding,
    DecompressionStrategy,
    Decompressor,
    DeflateDecompressor,
    GzipDecompressor,
    PassThrough,
    open_decompressor,
    resolve_encoding,
)
from .errors import (
    APIError,
    CorruptStream,
    DecodeError,
    DecodeErrorKind,
    RequestFailed,
    SchemaParseError,
    TruncatedRecord,
)
from .http import FragmentSource, Headers, HTTPSession, TDSession, TokenSource
from .jobs import JobClient, connect
from .logger import init_logger
from .models import Job
from .progress import ProgressTracker
from .record_decoder import IncrementalRecordProcessor, RecordDecoder
from .result_stream import ResultFormat, ResultStream
from .schema import ColumnSchema, parse_result_schema

__all__ = [
    "APIError",
    "ClientConfig",
    "ColumnSchema",
    "ContentEncoding",
    "CorruptStream",
    "DecodeError",
    "DecodeErrorKind",
    "DecompressionStrategy",
    "Decompressor",
    "DeflateDecompressor",
    "FragmentSource",
    "GzipDecompressor",
    "HTTPSession",
    "Headers",
    "IncrementalRecordProcessor",
    "Job",
    "JobClient",
    "PassThrough",
    "ProgressTracker",
    "RecordDecoder",
    "RequestFailed",
    "ResultFormat",
    "ResultStream",
    "SchemaParseError",
    "TDSession",
    "TokenSource",
    "TruncatedRecord",
    "connect",
    "init_logger",
    "open_decompressor",
    "parse_result_schema",
    "resolve_encoding",
]
