import os
from typing import Self

from pydantic import BaseModel, Field, PositiveInt, SecretStr

from .decompression import DecompressionStrategy

DEFAULT_ENDPOINT = "https://api.treasuredata.com"
DEFAULT_MAX_BUFFER_SIZE = 100 * 1024 * 1024  # 100 MiB, msgpack's own default.


class ClientConfig(BaseModel):
    apikey: SecretStr = Field(
        title="API Key",
        description="Key sent as `Authorization: TD1 <apikey>` on every request.",
    )
    endpoint: str = Field(
        default=DEFAULT_ENDPOINT,
        title="API Endpoint",
        description="Base URL of the job API. A bare host name is assumed to be HTTPS.",
    )
    user_agent: str = Field(
        default="td-job-results",
        title="User Agent",
    )
    records_strategy: DecompressionStrategy = Field(
        default=DecompressionStrategy.ASSUME_GZIP,
        title="Record Decompression Strategy",
        description=(
            "How the Content-Encoding of a decoded (msgpack) result is interpreted. "
            "'assume_gzip' treats a missing header as gzip."
        ),
    )
    raw_strategy: DecompressionStrategy = Field(
        default=DecompressionStrategy.EXPLICIT,
        title="Raw Decompression Strategy",
        description=(
            "How the Content-Encoding of a raw result is interpreted. "
            "'explicit' passes bytes through unless the header names an encoding."
        ),
    )
    max_buffer_size: PositiveInt = Field(
        default=DEFAULT_MAX_BUFFER_SIZE,
        title="Maximum Record Backlog",
        description="Upper bound, in bytes, of a single undecoded record.",
    )

    @property
    def base_url(self) -> str:
        endpoint = self.endpoint.rstrip("/")
        if "://" not in endpoint:
            endpoint = f"https://{endpoint}"
        return endpoint

    @classmethod
    def from_env(cls, **overrides) -> Self:
        values: dict = {}
        if apikey := os.environ.get("TD_API_KEY"):
            values["apikey"] = apikey
        if endpoint := os.environ.get("TD_API_SERVER"):
            values["endpoint"] = endpoint
        values.update(overrides)
        return cls.model_validate(values)
