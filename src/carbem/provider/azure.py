import csv
import io
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from carbem.errors import (
    InvalidQuery,
    JobNotReady,
    MalformedReport,
    ProviderError,
    TransientNetworkError,
    UnsupportedFilter,
)
from carbem.models import (
    EmissionMetadata,
    TimePeriod,
    UnifiedQuery,
    UnifiedRecord,
    parse_timestamp,
)
from carbem.provider.base import (
    JobState,
    JobStatus,
    ReportJob,
    apply_filters,
    is_transient,
    raise_for_status,
    send,
)
from carbem.provider.config import AzureConfig, ReportType

logger = structlog.get_logger()

AZURE_API_VERSION = "2025-04-01"
AZURE_SUBSCRIPTIONS_API_VERSION = "2022-12-01"
REPORTS_PATH = "/providers/Microsoft.Carbon/carbonEmissionReports"

CARBON_SCOPES = ["Scope1", "Scope2", "Scope3"]

# a report where more than this share of rows cannot be read
# is rejected instead of being returned partially
MAX_DROPPED_FRACTION = 0.1

_REPORT_TYPE_NAMES = {
    ReportType.OVERALL: "OverallSummaryReport",
    ReportType.MONTHLY: "MonthlySummaryReport",
}

# lower-cased Azure job status -> carbem state
_JOB_STATES = {
    "queued": JobState.QUEUED,
    "notstarted": JobState.QUEUED,
    "running": JobState.RUNNING,
    "inprogress": JobState.RUNNING,
    "succeeded": JobState.SUCCEEDED,
    "completed": JobState.SUCCEEDED,
    "failed": JobState.FAILED,
    "canceled": JobState.FAILED,
    "cancelled": JobState.FAILED,
}

# row columns, in order of preference
_SERVICE_FIELDS = ("meterCategory", "categoryType")
_EMISSION_FIELDS = ("totalEmissions", "latestMonthEmissions")
# copied verbatim into the record metadata when present
_EXTRA_FIELDS = ("resourceGroup", "location", "carbonIntensity", "changeRatio")


class AzureProvider:
    """
    AzureProvider implements the CarbonProvider protocol on top of the
    Azure Carbon Optimization reports API. A report is requested with a
    POST, its status is polled until it completes and the finished
    report is downloaded from the result URL it advertises.

    The API has no way to narrow a report by meter category or
    resource, so services and resources filters are never pushed down.
    """

    def __init__(self, config: "AzureConfig") -> "None":
        self._config = config
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
        )
        self._api_host = httpx.URL(config.base_url).host

    @property
    def name(self) -> "str":
        return "azure"

    @property
    def pushdown_filters(self) -> "frozenset[str]":
        return frozenset()

    @property
    def config(self) -> "AzureConfig":
        return self._config

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    def _auth_headers(self, url: "str") -> "dict[str, str]":
        """
        returns the bearer header for management API URLs only.
        """
        if httpx.URL(url).host != self._api_host:
            return {}
        return {"Authorization": f"Bearer {self._config.access_token}"}

    def _reports_url(self) -> "str":
        return f"{self._config.base_url}{REPORTS_PATH}"

    def _job_url(self, job_id: "str") -> "str":
        # the API may hand back a full resource id instead of a bare name
        if job_id.startswith("/"):
            return f"{self._config.base_url}{job_id}"
        return f"{self._reports_url()}/{job_id}"

    async def list_regions(self) -> "list[str]":
        """
        lists the subscription ids visible to the access token,
        following nextLink pagination.
        """
        subscriptions: "list[str]" = []
        url: "str | None" = f"{self._config.base_url}/subscriptions"
        params: "dict[str, str] | None" = {"api-version": AZURE_SUBSCRIPTIONS_API_VERSION}

        while url:
            resp = await send(
                self._client,
                self.name,
                "GET",
                url,
                params=params,
                headers=self._auth_headers(url),
            )
            raise_for_status(self.name, resp, client_error=ProviderError)
            data = _json(resp)

            for item in data.get("value", []):
                subscription_id = item.get("subscriptionId")
                if subscription_id:
                    subscriptions.append(subscription_id)

            # nextLink already carries the query string
            url = data.get("nextLink")
            params = None

        logger.debug("azure_subscriptions_listed", count=len(subscriptions))
        return subscriptions

    def build_request_body(
        self,
        query: "UnifiedQuery",
        subscriptions: "list[str]",
    ) -> "dict[str, Any]":
        """
        translates a query into the body of a report request. Azure
        date ranges are inclusive days, the query end is exclusive.
        """
        last_instant = query.time_period.end - timedelta(microseconds=1)
        return {
            "reportType": _REPORT_TYPE_NAMES[self._config.report_type],
            "subscriptionList": subscriptions,
            "carbonScopeList": list(CARBON_SCOPES),
            "dateRange": {
                "start": query.time_period.start.date().isoformat(),
                "end": last_instant.date().isoformat(),
            },
        }

    async def _subscriptions_for(self, query: "UnifiedQuery") -> "list[str]":
        if query.regions:
            return sorted(query.regions)
        if self._config.subscription_ids:
            return sorted(self._config.subscription_ids)
        return await self.list_regions()

    async def submit(self, query: "UnifiedQuery") -> "ReportJob":
        unsupported = query.active_filters - self.pushdown_filters
        if unsupported:
            raise UnsupportedFilter(self.name, unsupported)

        subscriptions = await self._subscriptions_for(query)
        if not subscriptions:
            raise InvalidQuery("no azure subscriptions to report on")

        body = self.build_request_body(query, subscriptions)
        resp = await send(
            self._client,
            self.name,
            "POST",
            self._reports_url(),
            params={"api-version": AZURE_API_VERSION},
            json=body,
            headers=self._auth_headers(self._reports_url()),
        )
        raise_for_status(self.name, resp)
        data = _json(resp)

        job_id = data.get("id") or data.get("reportId")
        if not job_id:
            raise ProviderError("azure accepted the report request without a report id")

        job = ReportJob(
            id=str(job_id),
            provider=self.name,
            query=query,
            submitted_at=datetime.now(timezone.utc),
        )
        logger.info(
            "azure_report_submitted",
            job_id=job.id,
            report_type=body["reportType"],
            subscriptions=len(subscriptions),
            tenant_id=self._config.tenant_id,
        )
        return job

    async def poll(self, job: "ReportJob") -> "JobStatus":
        job_url = self._job_url(job.id)
        resp = await send(
            self._client,
            self.name,
            "GET",
            job_url,
            params={"api-version": AZURE_API_VERSION},
            headers=self._auth_headers(job_url),
        )

        if not resp.is_success:
            if is_transient(resp):
                raise TransientNetworkError(
                    f"azure status check returned {resp.status_code}"
                )
            # any other client error ends the job, there is nothing to retry
            return JobStatus(
                JobState.FAILED,
                message=f"status check returned {resp.status_code}: {resp.text[:200]}",
            )

        data = _json(resp)
        raw_status = str(data.get("status", ""))
        state = _JOB_STATES.get(raw_status.lower())
        if state is None:
            raise ProviderError(f"unknown azure report status: {raw_status!r}")

        error = data.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)

        result_url = None
        if state is JobState.SUCCEEDED:
            result_url = data.get("resultUrl") or f"{job_url}/result"

        return JobStatus(state, result_url=result_url, message=message)

    async def fetch(self, job: "ReportJob") -> "list[UnifiedRecord]":
        if job.status is not JobState.SUCCEEDED or not job.result_url:
            raise JobNotReady(f"report job {job.id} is {job.status.value}")

        # result URLs may point at blob storage, which must not see the token
        resp = await send(
            self._client,
            self.name,
            "GET",
            job.result_url,
            headers=self._auth_headers(job.result_url),
        )
        raise_for_status(self.name, resp, client_error=ProviderError)

        rows = parse_report_rows(resp)
        records = self.normalize_rows(rows, job.query)
        records = apply_filters(records, job.query.services, job.query.resources)

        logger.info("azure_report_fetched", job_id=job.id, records=len(records))
        return records

    def normalize_rows(
        self,
        rows: "list[Any]",
        query: "UnifiedQuery",
    ) -> "list[UnifiedRecord]":
        """
        maps raw report rows to records. Unreadable rows are dropped and
        counted; too many of them make the whole report MalformedReport.
        """
        records: "list[UnifiedRecord]" = []
        dropped = 0

        for row in rows:
            try:
                record = self._to_record(row, query)
            except (ValueError, TypeError):
                dropped += 1
                continue
            if record is not None:
                records.append(record)

        if rows and dropped / len(rows) > MAX_DROPPED_FRACTION:
            raise MalformedReport(
                f"{dropped} of {len(rows)} azure report rows have no usable emissions value"
            )
        if dropped:
            logger.warning("azure_rows_dropped", dropped=dropped, total=len(rows))

        return records

    def _to_record(
        self,
        row: "Any",
        query: "UnifiedQuery",
    ) -> "UnifiedRecord | None":
        if not isinstance(row, dict):
            raise TypeError("report row is not an object")

        emissions = _emissions(row)

        if self._config.report_type is ReportType.MONTHLY:
            month = _row_month(row)
            period = month.intersection(query.time_period)
            if period is None:
                # outside the requested range, not an error
                return None
        else:
            period = query.time_period

        provider_data = {k: row[k] for k in _EXTRA_FIELDS if row.get(k) not in (None, "")}
        if self._config.tenant_id:
            provider_data["tenant_id"] = self._config.tenant_id

        return UnifiedRecord(
            provider=self.name,
            region=row.get("subscriptionId") or "unknown",
            service=_first(row, _SERVICE_FIELDS),
            resource=row.get("resourceId") or None,
            time_period=period,
            emissions_kg_co2eq=emissions,
            metadata=EmissionMetadata(provider_data=provider_data) if provider_data else None,
        )


def parse_report_rows(resp: "httpx.Response") -> "list[Any]":
    """
    reads report rows from a CSV or JSON body, going by content type.
    """
    content_type = resp.headers.get("content-type", "")
    if "csv" in content_type:
        return list(csv.DictReader(io.StringIO(resp.text)))

    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedReport("azure report is neither CSV nor JSON") from e

    if isinstance(data, dict):
        data = data.get("value")
    if not isinstance(data, list):
        raise MalformedReport("azure report JSON has no row list")
    return data


def _json(resp: "httpx.Response") -> "dict[str, Any]":
    try:
        data = resp.json()
    except ValueError as e:
        raise ProviderError("azure returned a non-JSON response") from e
    if not isinstance(data, dict):
        raise ProviderError("azure returned an unexpected JSON payload")
    return data


def _first(row: "dict[str, Any]", fields: "tuple[str, ...]") -> "str | None":
    for name in fields:
        value = row.get(name)
        if value:
            return str(value)
    return None


def _emissions(row: "dict[str, Any]") -> "float":
    for name in _EMISSION_FIELDS:
        if name in row:
            value = row[name]
            break
    else:
        raise ValueError("row has no emissions column")

    if isinstance(value, bool):
        raise TypeError("emissions value is a boolean")
    emissions = float(value)
    if not math.isfinite(emissions) or emissions < 0:
        raise ValueError(f"invalid emissions value: {value!r}")
    return emissions


def _row_month(row: "dict[str, Any]") -> "TimePeriod":
    raw = row.get("date")
    if not isinstance(raw, str) or not raw:
        raise ValueError("monthly row has no date")
    # monthly reports use either YYYY-MM or a full date
    if len(raw) == 7:
        raw = f"{raw}-01"
    date = parse_timestamp(raw)
    return TimePeriod.for_month(date.year, date.month)
