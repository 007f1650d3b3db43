import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, Sequence

import httpx
import structlog

from carbem.errors import (
    AuthenticationError,
    CarbemError,
    InvalidQuery,
    TransientNetworkError,
)
from carbem.models import UnifiedQuery, UnifiedRecord

logger = structlog.get_logger()

# statuses worth retrying, alongside every 5xx
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class JobState(enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # synthetic, set locally when polling gives up
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> "bool":
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT)


@dataclass(frozen=True, slots=True)
class JobStatus:
    """
    JobStatus is the outcome of a single remote status check.
    """

    state: "JobState"
    result_url: "str | None" = None
    message: "str | None" = None


@dataclass(slots=True)
class ReportJob:
    """
    ReportJob tracks one asynchronous report computation. It is
    created by submit, mutated only by the poll loop and dropped
    once the dispatch that created it returns.
    """

    id: "str"
    provider: "str"
    query: "UnifiedQuery"
    submitted_at: "datetime"
    status: "JobState" = JobState.QUEUED
    result_url: "str | None" = None
    attempts: "int" = 0

    def apply(self, status: "JobStatus") -> "None":
        self.status = status.state
        if status.result_url:
            self.result_url = status.result_url


class CarbonProvider(Protocol):
    """
    CarbonProvider stands as the common protocol that all
    cloud providers must satisfy.

    A provider turns a UnifiedQuery into a native report job,
    reports the job's status and, once the job succeeded,
    downloads and normalizes its result.
    """

    @property
    def name(self) -> "str": ...

    @property
    def pushdown_filters(self) -> "frozenset[str]": ...

    async def submit(self, query: "UnifiedQuery") -> "ReportJob": ...

    async def poll(self, job: "ReportJob") -> "JobStatus": ...

    async def fetch(self, job: "ReportJob") -> "Sequence[UnifiedRecord]": ...

    async def list_regions(self) -> "list[str]": ...

    async def close(self) -> "None": ...


def apply_filters(
    records: "Iterable[UnifiedRecord]",
    services: "frozenset[str] | None",
    resources: "frozenset[str] | None",
) -> "list[UnifiedRecord]":
    """
    keeps records matching the service and resource filters. A record
    without a service (or resource) never matches an active filter.
    """
    return [
        r
        for r in records
        if (services is None or r.service in services)
        and (resources is None or r.resource in resources)
    ]


def is_transient(response: "httpx.Response") -> "bool":
    return response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES


def raise_for_status(
    provider: "str",
    response: "httpx.Response",
    client_error: "type[CarbemError]" = InvalidQuery,
) -> "None":
    """
    maps the status of a provider response onto the carbem error
    taxonomy. client_error is raised for 4xx other than 401/403.
    """
    if response.is_success:
        return
    if is_transient(response):
        raise TransientNetworkError(f"{provider} returned {response.status_code}")
    if response.status_code in (401, 403):
        raise AuthenticationError(
            f"{provider} rejected the credentials ({response.status_code})"
        )
    raise client_error(
        f"{provider} rejected the request ({response.status_code}): {response.text[:500]}"
    )


async def send(
    client: "httpx.AsyncClient",
    provider: "str",
    method: "str",
    url: "str",
    **kwargs: "object",
) -> "httpx.Response":
    """
    performs one HTTP call, turning timeouts and transport failures
    into TransientNetworkError.
    """
    try:
        return await client.request(method, url, **kwargs)  # type: ignore[arg-type]
    except httpx.TimeoutException as e:
        logger.debug("http_timeout", provider=provider, url=url)
        raise TransientNetworkError(f"{provider} request timed out: {url}") from e
    except httpx.TransportError as e:
        logger.debug("http_transport_error", provider=provider, url=url, error=str(e))
        raise TransientNetworkError(f"{provider} request failed: {e}") from e
