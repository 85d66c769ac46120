import json

import pytest

from conftest import FakeResponse
from td_job_results.errors import APIError
from td_job_results.jobs import JobClient
from td_job_results.schema import ColumnSchema


def json_response(status: int, body: dict) -> FakeResponse:
    return FakeResponse(status, [json.dumps(body).encode()], {"Content-Type": "application/json"})


@pytest.fixture
def client(session, config, log) -> JobClient:
    return JobClient(session, config, log)


@pytest.mark.asyncio
async def test_list_jobs(session, client):
    session.add(
        "/v3/job/list",
        json_response(
            200,
            {
                "jobs": [
                    {
                        "job_id": "1",
                        "type": "hive",
                        "database": "db",
                        "status": "success",
                        "query": "SELECT 1",
                        "start_at": "2024-01-01 00:00:00 UTC",
                        "end_at": "2024-01-01 00:01:00 UTC",
                        "cpu_time": None,
                        "result_size": 123,
                        "result": "",
                        "priority": 0,
                        "retry_limit": 0,
                    },
                    {"job_id": 2, "status": "running"},
                ]
            },
        ),
    )

    jobs = await client.list_jobs(0, 10, "success", {"slower_than": "60"})

    assert [job.job_id for job in jobs] == ["1", "2"]
    assert jobs[0].result_size == 123
    assert jobs[0].finished()
    assert jobs[1].type == "?"
    assert not jobs[1].finished()
    assert session.calls[0]["params"] == {
        "from": "0",
        "to": "10",
        "status": "success",
        "slower_than": "60",
    }


@pytest.mark.asyncio
async def test_show_job_with_pig_schema(session, client):
    session.add(
        "/v3/job/show/42",
        json_response(
            200,
            {
                "job_id": "42",
                "type": "pig",
                "status": "success",
                "url": "https://console.example.com/jobs/42",
                "debug": {"stderr": "", "cmdout": ""},
                "hive_result_schema": '[["word", "chararray"], [nil, "long"]]',
                "result_size": 10,
            },
        ),
    )

    job = await client.show_job("42")

    assert job.type == "pig"
    assert job.hive_result_schema == [
        ColumnSchema("word", "chararray"),
        ColumnSchema("_col1", "long"),
    ]
    assert job.debug == {"stderr": "", "cmdout": ""}


@pytest.mark.asyncio
async def test_show_job_without_schema(session, client):
    session.add(
        "/v3/job/show/43",
        json_response(200, {"job_id": "43", "type": "hive", "status": "queued", "hive_result_schema": ""}),
    )

    job = await client.show_job("43")
    assert job.hive_result_schema is None


@pytest.mark.asyncio
async def test_job_status(session, client):
    session.add("/v3/job/status/42", json_response(200, {"job_id": "42", "status": "running"}))
    assert await client.job_status("42") == "running"


@pytest.mark.asyncio
async def test_kill(session, client):
    session.add("/v3/job/kill/42", json_response(200, {"job_id": "42", "former_status": "running"}))

    assert await client.kill("42") == "running"
    assert session.calls[0]["method"] == "POST"


@pytest.mark.asyncio
async def test_hive_query(session, client):
    session.add("/v3/job/issue/hive/sample_db", json_response(200, {"job_id": 777}))

    job_id = await client.hive_query("SELECT COUNT(1) FROM www_access", "sample_db", priority=1)

    assert job_id == "777"
    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["form"] == {
        "query": "SELECT COUNT(1) FROM www_access",
        "priority": "1",
    }


@pytest.mark.asyncio
async def test_pig_query_with_result_url(session, client):
    session.add("/v3/job/issue/pig/db", json_response(200, {"job_id": "5"}))

    assert await client.pig_query("a = LOAD 'x';", "db", result_url="td://@/db/out", retry_limit=2) == "5"
    assert session.calls[0]["form"] == {
        "query": "a = LOAD 'x';",
        "result": "td://@/db/out",
        "retry_limit": "2",
    }


@pytest.mark.asyncio
async def test_api_error(session, client):
    session.add("/v3/job/status/404", json_response(404, {"error": "Job not found"}))

    with pytest.raises(APIError, match="Get job status failed") as exc_info:
        await client.job_status("404")

    assert exc_info.value.code == 404
    assert "Job not found" in exc_info.value.body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path, body, call",
    [
        ("/v3/job/status/42", b'{"job_id": "42"}', lambda client: client.job_status("42")),
        ("/v3/job/kill/42", b"not json", lambda client: client.kill("42")),
        ("/v3/job/issue/hive/db", b'{"error": "none"}', lambda client: client.hive_query("SELECT 1", "db")),
    ],
)
async def test_unexpected_response_is_api_error(session, client, path, body, call):
    session.add(path, FakeResponse(200, [body], {"Content-Type": "application/json"}))

    with pytest.raises(APIError, match="unexpected response") as exc_info:
        await call(client)

    assert exc_info.value.code == 200
