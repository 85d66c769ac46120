from enum import StrEnum


class DecodeErrorKind(StrEnum):
    REQUEST_FAILED = "request_failed"
    CORRUPT_STREAM = "corrupt_stream"
    TRUNCATED_RECORD = "truncated_record"


class DecodeError(RuntimeError):
    """
    DecodeError is the terminal failure of a job result fetch. Subclasses
    identify the `kind` of failure. Records already delivered to the caller
    before a DecodeError remain valid: nothing is rolled back or retried.
    """

    kind: DecodeErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RequestFailed(DecodeError):
    """
    The result request returned a non-success status. No decompression or
    decoding was attempted, so the request can be retried as a whole.
    """

    kind = DecodeErrorKind.REQUEST_FAILED

    def __init__(self, message: str, code: int, body: str | None = None):
        super().__init__(message)
        self.code = code
        self.body = body


class CorruptStream(DecodeError):
    """
    The compressed or encoded bytes of the stream were rejected. The stream
    cannot be resumed.
    """

    kind = DecodeErrorKind.CORRUPT_STREAM


class TruncatedRecord(DecodeError):
    """
    The stream ended while the decoder still held part of a record.
    `pending` is the number of undecoded bytes left in the backlog.
    """

    kind = DecodeErrorKind.TRUNCATED_RECORD

    def __init__(self, message: str, pending: int):
        super().__init__(message)
        self.pending = pending


class APIError(RuntimeError):
    """
    APIError is raised when a job control-plane call (list, show, status,
    kill, issue) returns a non-success status.
    """

    def __init__(self, message: str, code: int, body: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.body = body


class SchemaParseError(ValueError):
    pass
