"""Tests for the HTTP API."""

import httpx
import pytest
import pytest_asyncio

from report_job_orchestrator.core.exceptions import NonRetryableError
from report_job_orchestrator.web.app import API_PREFIX, create_app

from conftest import USER_ID, job_request, schedule_request, template_request


@pytest_asyncio.fixture
async def client(orchestrator):
    app = create_app(orchestrator, manage_lifecycle=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test",
                                 headers={"X-User-Id": USER_ID}) as http_client:
        yield http_client


async def post_job(client, **overrides) -> str:
    response = await client.post(f"{API_PREFIX}/jobs", json=job_request(**overrides))
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.mark.asyncio
async def test_submit_and_get_job(client):
    response = await client.post(f"{API_PREFIX}/jobs", json=job_request())
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Report job queued"
    assert body["data"]["status"] == "queued"
    assert body["data"]["queuePosition"] == 0

    detail = await client.get(f"{API_PREFIX}/jobs/{body['data']['id']}")
    assert detail.status_code == 200
    job = detail.json()["data"]
    assert job["requestedBy"] == USER_ID
    assert job["parameters"] == {"groupBy": ["course"], "measures": ["count", "sum:score"]}


@pytest.mark.asyncio
async def test_error_responses(client):
    bad_id = await client.get(f"{API_PREFIX}/jobs/not-an-id")
    assert bad_id.status_code == 400
    assert bad_id.json()["success"] is False

    missing = await client.get(f"{API_PREFIX}/jobs/{'a' * 24}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"

    payload = job_request()
    del payload["output"]
    invalid = await client.post(f"{API_PREFIX}/jobs", json=payload)
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"

    unknown_type = await client.post(f"{API_PREFIX}/jobs", json=job_request(reportType="payroll"))
    assert unknown_type.status_code == 400
    assert unknown_type.json()["error"]["code"] == "UNKNOWN_REPORT_TYPE"


@pytest.mark.asyncio
async def test_cancel_endpoints(client, orchestrator):
    queued = await post_job(client)
    response = await client.post(f"{API_PREFIX}/jobs/{queued}/cancel", json={"reason": "not needed"})
    assert response.status_code == 200
    assert response.json()["data"] == {
        "id": queued, "status": "cancelled", "cancelledAt": "2024-03-01T12:00:00Z", "cancelRequested": False,
    }
    assert response.json()["message"] == "Report job cancelled"

    done = await post_job(client)
    await orchestrator.run_pending()
    conflict = await client.post(f"{API_PREFIX}/jobs/{done}/cancel")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "INVALID_JOB_STATE"


@pytest.mark.asyncio
async def test_retry_endpoint(client, orchestrator, data_source):
    data_source.failures = 1
    data_source.error = NonRetryableError("bad query")
    job_id = await post_job(client)
    await orchestrator.run_pending()

    response = await client.post(f"{API_PREFIX}/jobs/{job_id}/retry")
    assert response.status_code == 200
    assert response.json()["data"] == {"id": job_id, "status": "queued", "retryCount": 1}
    assert response.json()["message"] == "Report job re-queued"

    again = await client.post(f"{API_PREFIX}/jobs/{job_id}/retry")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_JOB_STATE"


@pytest.mark.asyncio
async def test_download(client, orchestrator, clock):
    job_id = await post_job(client)

    not_ready = await client.get(f"{API_PREFIX}/jobs/{job_id}/download")
    assert not_ready.status_code == 404

    await orchestrator.run_pending()
    response = await client.get(f"{API_PREFIX}/jobs/{job_id}/download")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == f'attachment; filename="learner-activity-{job_id}.csv"'
    assert response.text == "course,count,sum_score\nalgebra,5,20.0\nbiology,5,25.0\n"

    clock.advance(hours=200)
    expired = await client.get(f"{API_PREFIX}/jobs/{job_id}/download")
    assert expired.status_code == 410
    assert expired.json()["error"]["code"] == "REPORT_EXPIRED"


@pytest.mark.asyncio
async def test_list_jobs_with_filters(client, clock):
    first = await post_job(client)
    clock.advance(seconds=1)
    second = await post_job(client, priority="high")

    response = await client.get(f"{API_PREFIX}/jobs", params={"status": "queued", "limit": 1})
    body = response.json()
    assert response.status_code == 200
    assert [job["id"] for job in body["data"]] == [second]
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "totalPages": 2}

    by_priority = await client.get(f"{API_PREFIX}/jobs", params={"sortBy": "priority", "sortOrder": "asc"})
    assert [job["id"] for job in by_priority.json()["data"]] == [first, second]

    rejected = await client.get(f"{API_PREFIX}/jobs", params={"limit": 500})
    assert rejected.status_code == 400


@pytest.mark.asyncio
async def test_template_and_schedule_routes(client):
    template = await client.post(f"{API_PREFIX}/templates", json=template_request())
    assert template.status_code == 201
    template_id = template.json()["data"]["id"]

    schedule = await client.post(f"{API_PREFIX}/schedules", json=schedule_request(template_id))
    assert schedule.status_code == 201
    schedule_id = schedule.json()["data"]["id"]
    assert schedule.json()["data"]["nextRunAt"] == "2024-03-02T09:00:00Z"

    blocked = await client.delete(f"{API_PREFIX}/templates/{template_id}")
    assert blocked.status_code == 409
    assert blocked.json()["error"]["code"] == "TEMPLATE_IN_USE"

    paused = await client.post(f"{API_PREFIX}/schedules/{schedule_id}/pause", json={"reason": "audit"})
    assert paused.status_code == 200
    assert paused.json()["data"]["isActive"] is False

    again = await client.post(f"{API_PREFIX}/schedules/{schedule_id}/pause")
    assert again.status_code == 409

    clone = await client.post(f"{API_PREFIX}/templates/{template_id}/clone", json={})
    assert clone.status_code == 201
    assert clone.json()["data"]["name"] == "Weekly scores (Copy)"

    deleted = await client.delete(f"{API_PREFIX}/templates/{template_id}")
    assert deleted.status_code == 200
    assert (await client.get(f"{API_PREFIX}/templates/{template_id}")).status_code == 404

    listing = await client.get(f"{API_PREFIX}/schedules", params={"isActive": "false"})
    assert [item["id"] for item in listing.json()["data"]] == [schedule_id]


@pytest.mark.asyncio
async def test_health_and_metrics(client):
    await post_job(client)

    health = await client.get(f"{API_PREFIX}/health")
    assert health.status_code == 200
    data = health.json()["data"]
    assert data["overall_status"] == "degraded"
    assert data["jobs_by_status"]["queued"] == 1

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert 'report_jobs_submitted_total{report_type="learner-activity"} 1.0' in metrics.text
