import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

import structlog

from carbem.errors import (
    JobCancelled,
    PollTimeout,
    ReportJobFailed,
    TransientNetworkError,
)
from carbem.provider.base import CarbonProvider, JobState, JobStatus, ReportJob

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """
    BackoffPolicy bounds how long and how often a report job is
    polled, and how many transient failures in a row are tolerated.
    """

    # seconds before the second poll
    initial_delay: "float" = 2.0
    multiplier: "float" = 2.0
    max_delay: "float" = 30.0
    # fraction of the delay added at random
    jitter: "float" = 0.1
    max_attempts: "int" = 30
    # wall-clock budget for the whole poll loop, in seconds
    deadline: "float" = 900.0
    max_transient_retries: "int" = 5

    def __post_init__(self) -> "None":
        if self.initial_delay < 0 or self.max_delay < self.initial_delay:
            raise ValueError("delays must satisfy 0 <= initial_delay <= max_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.deadline <= 0:
            raise ValueError("deadline must be positive")
        if self.max_transient_retries < 0:
            raise ValueError("max_transient_retries must be >= 0")

    def delays(self, rng: "random.Random | None" = None) -> "Iterator[float]":
        """
        yields an endless, non-decreasing sequence of delays.
        """
        rng = rng or random.Random()
        base = self.initial_delay
        previous = 0.0
        while True:
            delay = base + rng.uniform(0, self.jitter * base)
            # jitter may never make the schedule shrink
            delay = max(previous, delay)
            previous = delay
            yield delay
            base = min(self.max_delay, base * self.multiplier)


class JobPoller:
    """
    JobPoller drives a submitted ReportJob to a terminal state.

    The job is polled right away and then after each backoff delay.
    The wait between polls is the only place the loop suspends
    besides the provider call itself, and it watches the optional
    cancel event so a caller can abort it at any time.
    """

    def __init__(
        self,
        policy: "BackoffPolicy | None" = None,
        cancel_event: "asyncio.Event | None" = None,
        sleep: "Sleep | None" = None,
        clock: "Callable[[], float]" = time.monotonic,
        rng: "random.Random | None" = None,
    ) -> "None":
        self._policy = policy or BackoffPolicy()
        self._cancel_event = cancel_event
        self._sleep: "Sleep" = sleep or self._interruptible_sleep
        self._clock = clock
        self._rng = rng

    @property
    def policy(self) -> "BackoffPolicy":
        return self._policy

    async def _interruptible_sleep(self, delay: "float") -> "None":
        if self._cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _check_cancelled(self, what: "str") -> "None":
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise JobCancelled(f"{what} cancelled by caller")

    async def wait(self, provider: "CarbonProvider", job: "ReportJob") -> "JobStatus":
        """
        polls until the job succeeds and returns the final status.
        Raises ReportJobFailed, PollTimeout or JobCancelled otherwise.
        """
        log = logger.bind(provider=provider.name, job_id=job.id)
        started = self._clock()
        delays = self._policy.delays(self._rng)
        transient_failures = 0

        try:
            while True:
                self._check_cancelled(f"polling of job {job.id}")
                job.attempts += 1

                try:
                    status = await provider.poll(job)
                except TransientNetworkError as e:
                    transient_failures += 1
                    if transient_failures > self._policy.max_transient_retries:
                        log.error("poll_retries_exhausted", attempts=job.attempts)
                        raise
                    log.warning(
                        "poll_transient_error",
                        attempt=job.attempts,
                        consecutive=transient_failures,
                        error=str(e),
                    )
                else:
                    transient_failures = 0
                    job.apply(status)
                    log.debug("poll_attempt", attempt=job.attempts, state=status.state.value)

                    if status.state is JobState.SUCCEEDED:
                        log.info("report_job_succeeded", attempts=job.attempts)
                        return status
                    if status.state is JobState.FAILED:
                        log.error("report_job_failed", reason=status.message)
                        raise ReportJobFailed(
                            f"{provider.name} report job {job.id} failed: "
                            f"{status.message or 'no reason given'}"
                        )
                    if status.state is JobState.TIMED_OUT:
                        self._time_out(job, "provider reported a timeout")

                if job.attempts >= self._policy.max_attempts:
                    self._time_out(job, f"no terminal state after {job.attempts} polls")

                delay = next(delays)
                if self._clock() - started + delay > self._policy.deadline:
                    self._time_out(
                        job, f"deadline of {self._policy.deadline}s would be exceeded"
                    )

                await self._sleep(delay)
        except asyncio.CancelledError:
            log.info("poll_cancelled", attempts=job.attempts)
            raise

    def _time_out(self, job: "ReportJob", reason: "str") -> "None":
        job.status = JobState.TIMED_OUT
        logger.error("report_job_timed_out", job_id=job.id, reason=reason)
        raise PollTimeout(f"report job {job.id} timed out: {reason}")

    async def retry(
        self,
        operation: "Callable[[], Awaitable[T]]",
        what: "str",
    ) -> "T":
        """
        runs operation, retrying TransientNetworkError with the same
        backoff schedule as polling.
        """
        delays = self._policy.delays(self._rng)
        failures = 0
        while True:
            self._check_cancelled(what)
            try:
                return await operation()
            except TransientNetworkError as e:
                failures += 1
                if failures > self._policy.max_transient_retries:
                    logger.error("retries_exhausted", operation=what, failures=failures)
                    raise
                delay = next(delays)
                logger.warning(
                    "transient_error_retry",
                    operation=what,
                    attempt=failures,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)
