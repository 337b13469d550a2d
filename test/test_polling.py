"""Tests for the bounded job poller."""
import pytest

from salesforce_mcp.errors import JobTimeoutError
from salesforce_mcp.services.polling import AsyncJobHandle, JobPoller, JobState, JobStatus


def _scripted(statuses):
    calls = []

    async def query_status(job_id):
        calls.append(job_id)
        status = statuses[min(len(calls), len(statuses)) - 1]
        return JobStatus(status, {"call": len(calls)})

    return query_status, calls


@pytest.mark.asyncio
async def test_completes_after_three_polls(poller, instant_sleep):
    query_status, calls = _scripted(["Processing", "Processing", "Completed"])

    result = await poller.poll(AsyncJobHandle("707000000000001"), query_status)

    assert result.state is JobState.COMPLETED
    assert result.status == "Completed"
    assert result.attempts == 3
    assert result.payload == {"call": 3}
    assert calls == ["707000000000001"] * 3
    # sleeps only between polls
    assert instant_sleep.delays == [5.0, 5.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", ["Failed", "Aborted"])
async def test_remote_failure_is_terminal_not_timeout(poller, terminal):
    query_status, calls = _scripted(["Queued", terminal])

    result = await poller.poll(AsyncJobHandle("job"), query_status)

    assert result.state is JobState.FAILED
    assert result.status == terminal
    assert not result.succeeded
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_times_out_after_ceiling(poller, instant_sleep):
    query_status, calls = _scripted(["Processing"])

    with pytest.raises(JobTimeoutError) as excinfo:
        await poller.poll(AsyncJobHandle("job-1"), query_status)

    assert len(calls) == 60
    assert len(instant_sleep.delays) == 59
    assert excinfo.value.job_id == "job-1"
    assert excinfo.value.attempts == 60
    assert excinfo.value.state == JobState.TIMED_OUT
    assert excinfo.value.last_status == "Processing"
    payload = excinfo.value.to_dict()
    assert payload["errorCode"] == "JOB_TIMEOUT"
    assert payload["state"] == "TimedOut"


@pytest.mark.asyncio
async def test_custom_terminal_statuses(instant_sleep):
    poller = JobPoller(interval=1.0, max_attempts=3, sleep=instant_sleep)
    query_status, _ = _scripted(["InProgress", "Done"])

    result = await poller.poll(AsyncJobHandle("x"), query_status, terminal_statuses=frozenset({"Done"}))

    assert result.status == "Done"
    assert result.attempts == 2
