from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .schema import ColumnSchema


class Job(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    job_id: str
    type: str = "?"
    database: str | None = None
    status: str | None = None
    query: Any = None
    url: str | None = None
    debug: dict[str, Any] | None = None
    start_at: str | None = None
    end_at: str | None = None
    cpu_time: float | None = None
    # Compressed size of the result in msgpack.gz format.
    result_size: int | None = None
    result_url: str | None = Field(default=None, alias="result")
    priority: int | None = None
    retry_limit: int | None = None
    hive_result_schema: list[ColumnSchema] | None = None

    def finished(self) -> bool:
        return self.status in ("success", "error", "killed")


class JobListResponse(BaseModel):
    jobs: list[dict[str, Any]]


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: str | None = None
    status: str


class KillResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    former_status: str | None = None


class IssueResponse(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    job_id: str
