import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode, urljoin

import httpx
import structlog

from carbem.errors import JobNotReady, MalformedReport, ProviderError, UnsupportedFilter
from carbem.models import (
    EmissionMetadata,
    TimePeriod,
    UnifiedQuery,
    UnifiedRecord,
)
from carbem.provider.base import (
    JobState,
    JobStatus,
    ReportJob,
    apply_filters,
    raise_for_status,
    send,
)
from carbem.provider.config import IbmConfig

logger = structlog.get_logger()

IBM_API_VERSION = "v1"


class IbmProvider:
    """
    IbmProvider implements the CarbonProvider protocol for the IBM Cloud
    Carbon Calculator. That API answers synchronously, so submit only
    prepares the request URL, poll reports success straight away and
    fetch performs the actual call.
    """

    def __init__(self, config: "IbmConfig") -> "None":
        self._config = config
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=config.request_timeout,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Accept": "application/json",
            },
        )

    @property
    def name(self) -> "str":
        return "ibm"

    @property
    def pushdown_filters(self) -> "frozenset[str]":
        return frozenset({"services"})

    async def close(self) -> "None":
        await self._client.aclose()

    async def list_regions(self) -> "list[str]":
        # locations are free-form names; an empty filter already means all
        return []

    def build_url(self, query: "UnifiedQuery") -> "str":
        last_instant = query.time_period.end - timedelta(microseconds=1)
        params: "list[tuple[str, str]]" = [
            ("enterprise_id", self._config.enterprise_id),
            ("month", f"gte:{query.time_period.start:%Y-%m}"),
            ("month", f"lte:{last_instant:%Y-%m}"),
        ]
        if query.regions:
            params.append(("locations", ", ".join(sorted(query.regions))))
        if query.services:
            params.append(("services", ", ".join(sorted(query.services))))
        if self._config.enterprise_account_id:
            params.append(("enterprise_account_id", self._config.enterprise_account_id))
        if self._config.group_by is not None:
            params.append(("group_by", self._config.group_by.value))
        if self._config.limit is not None:
            params.append(("limit", str(self._config.limit)))
        if self._config.offset is not None:
            params.append(("offset", str(self._config.offset)))

        return (
            f"{self._config.base_url}/{IBM_API_VERSION}/carbon_emissions"
            f"?{urlencode(params)}"
        )

    async def submit(self, query: "UnifiedQuery") -> "ReportJob":
        unsupported = query.active_filters - self.pushdown_filters
        if unsupported:
            raise UnsupportedFilter(self.name, unsupported)

        job = ReportJob(
            id=str(uuid.uuid4()),
            provider=self.name,
            query=query,
            submitted_at=datetime.now(timezone.utc),
            result_url=self.build_url(query),
        )
        logger.debug("ibm_request_prepared", job_id=job.id, url=job.result_url)
        return job

    async def poll(self, job: "ReportJob") -> "JobStatus":
        return JobStatus(JobState.SUCCEEDED, result_url=job.result_url)

    async def fetch(self, job: "ReportJob") -> "list[UnifiedRecord]":
        if job.status is not JobState.SUCCEEDED or not job.result_url:
            raise JobNotReady(f"ibm job {job.id} is {job.status.value}")

        rows: "list[Any]" = []
        seen: "set[str]" = set()
        url: "str | None" = job.result_url

        # results are paged, next.href points at the following page
        while url and url not in seen:
            seen.add(url)
            resp = await send(self._client, self.name, "GET", url)
            raise_for_status(self.name, resp)

            try:
                data = resp.json()
            except ValueError as e:
                raise ProviderError("ibm returned a non-JSON response") from e

            page = data.get("carbon_emissions") if isinstance(data, dict) else None
            if not isinstance(page, list):
                raise MalformedReport("ibm response has no carbon_emissions list")
            rows.extend(page)
            url = self._next_page(data, url)

        records = []
        for row in rows:
            try:
                records.append(self.convert_row(row, job.query.time_period))
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedReport(f"unreadable ibm emission row: {row!r}") from e

        records = apply_filters(records, job.query.services, job.query.resources)
        logger.info("ibm_emissions_fetched", job_id=job.id, records=len(records))
        return records

    def _next_page(self, data: "dict[str, Any]", current: "str") -> "str | None":
        link = data.get("next")
        href = link.get("href") if isinstance(link, dict) else None
        if not href:
            return None
        # hrefs may be relative to the API host
        return urljoin(current, href)

    def convert_row(
        self,
        row: "dict[str, Any]",
        query_period: "TimePeriod",
    ) -> "UnifiedRecord":
        """
        converts one carbon_emissions entry. The API reports grams of
        CO2e and watt-hours; records carry kilograms and kWh.
        """
        if not isinstance(row, dict):
            raise TypeError("emission row is not an object")
        group_by = row.get("group_by") or {}
        if not isinstance(group_by, dict):
            raise TypeError("group_by is not an object")
        group_type = group_by.get("type")
        group_value = group_by.get("value")

        region = row.get("location") or (group_value if group_type == "location" else None)
        service = row.get("service") or (group_value if group_type == "service" else None)

        provider_data: "dict[str, Any]" = {"account_id": row["account_id"]}
        if group_type is not None:
            provider_data["group_by_type"] = group_type
            provider_data["group_by_value"] = group_value

        energy = row.get("energy_consumption")
        return UnifiedRecord(
            provider=self.name,
            region=region or "unknown",
            service=service,
            time_period=_month_period(row, query_period),
            emissions_kg_co2eq=float(row["carbon_emission"]) / 1000.0,
            metadata=EmissionMetadata(
                energy_kwh=float(energy) / 1000.0 if energy is not None else None,
                provider_data=provider_data,
            ),
        )


def _month_period(row: "dict[str, Any]", query_period: "TimePeriod") -> "TimePeriod":
    month = row.get("month") or {}
    if not isinstance(month, dict):
        raise TypeError("month is not an object")
    value = month.get("value")
    try:
        year, number = (int(part) for part in str(value).split("-"))
        period = TimePeriod.for_month(year, number)
    except ValueError:
        return query_period
    return period.intersection(query_period) or query_period
