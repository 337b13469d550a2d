"""Bounded polling for long-running remote jobs (test runs, deployments)."""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional

from salesforce_mcp.errors import JobTimeoutError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0  # seconds
MAX_POLL_ATTEMPTS = 60

TERMINAL_STATUSES: FrozenSet[str] = frozenset({"Completed", "Failed", "Aborted"})


class JobState(str, enum.Enum):
    POLLING = "Polling"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class AsyncJobHandle:
    """A submitted job; polling starts from here."""

    job_id: str
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class JobStatus:
    """One status observation. ``status`` is compared against the terminal set."""

    status: str
    payload: Any = None


@dataclass(frozen=True)
class PollResult:
    handle: AsyncJobHandle
    state: JobState
    status: str
    payload: Any
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED


StatusQuery = Callable[[str], Awaitable[JobStatus]]


class JobPoller:
    """Query a job's status until it is terminal or the attempt ceiling is hit.

    The poller knows nothing about what the job does; callers supply the status
    query and interpret the terminal payload. ``sleep`` is injectable so tests
    never wait on the wall clock.
    """

    def __init__(
        self,
        interval: float = POLL_INTERVAL,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def poll(
        self,
        handle: AsyncJobHandle,
        query_status: StatusQuery,
        terminal_statuses: Optional[FrozenSet[str]] = None,
    ) -> PollResult:
        terminal = terminal_statuses or TERMINAL_STATUSES
        last_status: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            observed = await query_status(handle.job_id)
            last_status = observed.status
            logger.info(
                "Job %s %s, check %d/%d: %s",
                handle.job_id,
                JobState.POLLING.value,
                attempt,
                self.max_attempts,
                observed.status,
            )
            if observed.status in terminal:
                state = JobState.COMPLETED if observed.status == "Completed" else JobState.FAILED
                return PollResult(handle, state, observed.status, observed.payload, attempt)
            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        logger.error("Job %s %s, last status %s", handle.job_id, JobState.TIMED_OUT.value, last_status)
        raise JobTimeoutError(
            handle.job_id,
            self.max_attempts,
            self.interval,
            state=JobState.TIMED_OUT.value,
            last_status=last_status,
        )
