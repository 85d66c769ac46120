from contextlib import asynccontextmanager
from logging import Logger
from typing import Any, AsyncIterator, TypeVar

import pydantic

from .config import ClientConfig
from .decompression import DecompressionStrategy
from .errors import APIError
from .http import HTTPError, HTTPSession, TDSession, TokenSource
from .logger import logging_context
from .models import IssueResponse, Job, JobListResponse, JobStatusResponse, KillResponse
from .progress import ProgressCallback
from .result_stream import (
    RecordHandler,
    RecordProgressHandler,
    ResultFormat,
    ResultStream,
    Sink,
)
from .schema import parse_result_schema
from .utils import escape_path

_Model = TypeVar("_Model", bound=pydantic.BaseModel)


class JobClient:
    """
    JobClient issues, inspects and kills jobs, and retrieves their results.

    Results are streamed: records are decoded as the compressed body arrives
    and are never buffered as a whole, except by `fetch_all`.
    """

    def __init__(self, http: HTTPSession, config: ClientConfig, log: Logger):
        self.http = http
        self.config = config
        self.log = log

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    async def _call(
        self,
        action: str,
        path: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        form: dict[str, Any] | None = None,
    ) -> bytes:
        try:
            return await self.http.request(
                self.log, self._url(path), method=method, params=params, form=form
            )
        except HTTPError as err:
            raise APIError(f"{action} failed: HTTP {err.code}", err.code, err.body) from err

    @staticmethod
    def _parse(action: str, model: type[_Model], body: bytes) -> _Model:
        try:
            return model.model_validate_json(body)
        except pydantic.ValidationError as err:
            raise APIError(f"{action} returned an unexpected response: {err}", 200) from err

    @staticmethod
    def _job(data: dict[str, Any]) -> Job:
        data = dict(data)
        data["hive_result_schema"] = parse_result_schema(
            data.get("hive_result_schema"), data.get("type")
        )
        return Job.model_validate(data)

    async def list_jobs(
        self,
        from_: int | None = 0,
        to: int | None = None,
        status: str | None = None,
        conditions: dict[str, Any] | None = None,
    ) -> list[Job]:
        params: dict[str, Any] = {}
        if from_ is not None:
            params["from"] = str(from_)
        if to is not None:
            params["to"] = str(to)
        if status is not None:
            params["status"] = str(status)
        if conditions:
            params.update(conditions)

        body = await self._call("List jobs", "/v3/job/list", params=params)
        try:
            response = JobListResponse.model_validate_json(body)
            return [self._job(job) for job in response.jobs]
        except pydantic.ValidationError as err:
            raise APIError(f"List jobs returned an unexpected response: {err}", 200) from err

    async def show_job(self, job_id: str) -> Job:
        # show, not status: it includes the result schema.
        body = await self._call("Show job", f"/v3/job/show/{escape_path(job_id)}")
        try:
            data = pydantic.TypeAdapter(dict[str, Any]).validate_json(body)
            data.setdefault("job_id", str(job_id))
            return self._job(data)
        except pydantic.ValidationError as err:
            raise APIError(f"Show job returned an unexpected response: {err}", 200) from err

    async def job_status(self, job_id: str) -> str:
        body = await self._call("Get job status", f"/v3/job/status/{escape_path(job_id)}")
        return self._parse("Get job status", JobStatusResponse, body).status

    async def kill(self, job_id: str) -> str | None:
        body = await self._call("Kill job", f"/v3/job/kill/{escape_path(job_id)}", method="POST")
        return self._parse("Kill job", KillResponse, body).former_status

    async def query(
        self,
        q: str,
        type: str = "hive",
        db: str | None = None,
        result_url: str | None = None,
        priority: int | None = None,
        retry_limit: int | None = None,
        **opts: Any,
    ) -> str:
        form: dict[str, Any] = {"query": q, **opts}
        if result_url:
            form["result"] = result_url
        if priority is not None:
            form["priority"] = str(priority)
        if retry_limit is not None:
            form["retry_limit"] = str(retry_limit)

        path = f"/v3/job/issue/{escape_path(type)}/{escape_path(db or '')}"
        body = await self._call("Query", path, method="POST", form=form)
        job_id = self._parse("Query", IssueResponse, body).job_id

        self.log.debug("issued job", {"job_id": job_id, "type": type, "database": db})
        return job_id

    async def hive_query(self, q: str, db: str | None = None, **kwargs: Any) -> str:
        return await self.query(q, "hive", db, **kwargs)

    async def pig_query(self, q: str, db: str | None = None, **kwargs: Any) -> str:
        return await self.query(q, "pig", db, **kwargs)

    @asynccontextmanager
    async def stream_results(
        self,
        job_id: str,
        format: ResultFormat | str = ResultFormat.MSGPACK,
        strategy: DecompressionStrategy | None = None,
        on_fragment: ProgressCallback | None = None,
    ) -> AsyncIterator[ResultStream]:
        """
        Open a ResultStream for the result of `job_id`. The stream, its
        decompressor and the connection are released when the block exits.

        ```python
        async with client.stream_results(job_id) as stream:
            async for row in stream.records():
                ...
        ```
        """
        if strategy is None:
            strategy = (
                self.config.records_strategy
                if format == ResultFormat.MSGPACK
                else self.config.raw_strategy
            )

        with logging_context(job_id=str(job_id)):
            source = await self.http.open_response(
                self.log,
                self._url(f"/v3/job/result/{escape_path(job_id)}"),
                params={"format": str(format)},
            )
            stream = await ResultStream.open(
                source,
                self.log,
                format=format,
                strategy=strategy,
                max_buffer_size=self.config.max_buffer_size,
                on_fragment=on_fragment,
            )
            async with stream:
                yield stream

    async def fetch_all(
        self,
        job_id: str,
        format: ResultFormat | str = ResultFormat.MSGPACK,
        strategy: DecompressionStrategy | None = None,
    ) -> list[Any] | bytes:
        """Return every record of a msgpack result, or the whole body of any other format."""
        async with self.stream_results(job_id, format, strategy) as stream:
            return await stream.collect()

    async def fetch_each(
        self,
        job_id: str,
        handler: RecordHandler,
        strategy: DecompressionStrategy | None = None,
    ) -> None:
        async with self.stream_results(job_id, ResultFormat.MSGPACK, strategy) as stream:
            await stream.each(handler)

    async def fetch_each_with_progress(
        self,
        job_id: str,
        handler: RecordProgressHandler,
        strategy: DecompressionStrategy | None = None,
    ) -> None:
        """Like `fetch_each`, also passing the compressed bytes received so far."""
        async with self.stream_results(job_id, ResultFormat.MSGPACK, strategy) as stream:
            await stream.each_with_progress(handler)

    async def fetch_raw_into(
        self,
        job_id: str,
        format: ResultFormat | str,
        sink: Sink,
        progress: ProgressCallback | None = None,
        strategy: DecompressionStrategy | None = None,
    ) -> int:
        async with self.stream_results(job_id, format, strategy) as stream:
            return await stream.copy_into(sink, progress)


@asynccontextmanager
async def connect(config: ClientConfig, log: Logger) -> AsyncIterator[JobClient]:
    """Open an HTTP session for `config` and yield a JobClient using it."""
    token_source = TokenSource(config.apikey.get_secret_value())
    async with TDSession(token_source, config.user_agent, log) as http:
        yield JobClient(http, config, log)
