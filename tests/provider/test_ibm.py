from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest
import respx

from carbem.errors import AuthenticationError, MalformedReport, UnsupportedFilter
from carbem.models import TimePeriod, UnifiedQuery
from carbem.polling import BackoffPolicy
from carbem.provider.base import JobState
from carbem.provider.config import IBM_BASE_URL, IbmConfig, IbmGroupBy
from carbem.provider.ibm import IbmProvider
from carbem.registry import ProviderRegistry

EMISSIONS_URL = f"{IBM_BASE_URL}/v1/carbon_emissions"
ENTERPRISE_ID = "x2x261x8x5x84xxxx49x4891xx077xx9"


def _utc(*args: "int") -> "datetime":
    return datetime(*args, tzinfo=timezone.utc)


def _config(**kwargs: "object") -> "IbmConfig":
    return IbmConfig(api_key="test-api-key", enterprise_id=ENTERPRISE_ID, **kwargs)  # type: ignore[arg-type]


def _first_quarter(**kwargs: "object") -> "UnifiedQuery":
    return UnifiedQuery(
        provider="ibm",
        time_period=TimePeriod(_utc(2023, 1, 1), _utc(2023, 4, 1)),
        **kwargs,  # type: ignore[arg-type]
    )


class TestIbmRequest:
    def test_build_url(self) -> "None":
        provider = IbmProvider(_config(group_by=IbmGroupBy.MONTH))
        query = _first_quarter(
            regions={"Frankfurt", "Dallas"},
            services={"Kubernetes Service", "Cloud Object Storage"},
        )

        url = urlsplit(provider.build_url(query))
        params = parse_qsl(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == EMISSIONS_URL
        assert ("enterprise_id", ENTERPRISE_ID) in params
        assert ("month", "gte:2023-01") in params
        # the query end is exclusive, April is not part of it
        assert ("month", "lte:2023-03") in params
        assert ("locations", "Dallas, Frankfurt") in params
        assert ("services", "Cloud Object Storage, Kubernetes Service") in params
        assert ("group_by", "month") in params

    def test_optional_params_omitted(self) -> "None":
        provider = IbmProvider(_config())
        params = dict(parse_qsl(urlsplit(provider.build_url(_first_quarter())).query))
        assert "locations" not in params
        assert "services" not in params
        assert "group_by" not in params
        assert "limit" not in params
        assert "offset" not in params

    def test_paging_params(self) -> "None":
        provider = IbmProvider(_config(limit=50, offset=100))
        params = dict(parse_qsl(urlsplit(provider.build_url(_first_quarter())).query))
        assert params["limit"] == "50"
        assert params["offset"] == "100"

    @pytest.mark.asyncio
    async def test_resources_cannot_be_pushed_down(self) -> "None":
        provider = IbmProvider(_config())
        with pytest.raises(UnsupportedFilter):
            await provider.submit(_first_quarter(resources={"vm-1"}))

    @pytest.mark.asyncio
    async def test_job_is_ready_immediately(self) -> "None":
        provider = IbmProvider(_config())
        job = await provider.submit(_first_quarter(services={"Cloud Object Storage"}))

        status = await provider.poll(job)

        assert status.state is JobState.SUCCEEDED
        assert status.result_url == job.result_url


class TestIbmConvertRow:
    def test_grams_and_watt_hours(self) -> "None":
        provider = IbmProvider(_config())
        row = {
            "account_id": ENTERPRISE_ID,
            "carbon_emission": 2000.0,
            "energy_consumption": 5000.0,
            "month": {"value": "2023-01", "min": "2023-01", "max": "2023-02"},
            "group_by": {"type": "month", "value": "2023-01"},
        }

        record = provider.convert_row(row, _first_quarter().time_period)

        assert record.provider == "ibm"
        assert record.region == "unknown"
        assert record.service is None
        assert record.emissions_kg_co2eq == 2.0
        assert record.time_period == TimePeriod.for_month(2023, 1)
        assert record.metadata is not None
        assert record.metadata.energy_kwh == 5.0
        assert record.metadata.provider_data == {
            "account_id": ENTERPRISE_ID,
            "group_by_type": "month",
            "group_by_value": "2023-01",
        }

    def test_location_from_group_by(self) -> "None":
        provider = IbmProvider(_config())
        row = {
            "account_id": "test-account",
            "carbon_emission": 1500.0,
            "energy_consumption": 3000.0,
            "month": {"value": "2023-02"},
            "group_by": {"type": "location", "value": "Dallas"},
            "service": "Cloud Object Storage",
        }

        record = provider.convert_row(row, _first_quarter().time_period)

        assert record.region == "Dallas"
        assert record.service == "Cloud Object Storage"
        assert record.emissions_kg_co2eq == 1.5

    def test_unparseable_month_uses_query_period(self) -> "None":
        provider = IbmProvider(_config())
        period = _first_quarter().time_period
        row = {"account_id": "a", "carbon_emission": 0.0, "month": {"value": "soon"}}

        assert provider.convert_row(row, period).time_period == period


class TestIbmFetch:
    @pytest.mark.asyncio
    @respx.mock
    async def test_dispatch(self) -> "None":
        route = respx.get(EMISSIONS_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "carbon_emissions": [
                        {
                            "account_id": "acc",
                            "carbon_emission": 1000.0,
                            "energy_consumption": 2000.0,
                            "month": {"value": "2023-03"},
                            "location": "Dallas",
                            "service": "Kubernetes Service",
                        }
                    ],
                    "total_count": 1,
                },
            )
        )
        registry = ProviderRegistry(policy=BackoffPolicy(initial_delay=0.0, jitter=0.0))
        registry.register("ibm", _config())

        records = await registry.dispatch(_first_quarter(regions={"Dallas"}))
        await registry.close()

        assert route.call_count == 1
        assert route.calls.last.request.headers["Authorization"] == "Bearer test-api-key"
        assert len(records) == 1
        assert records[0].region == "Dallas"
        assert records[0].emissions_kg_co2eq == 1.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized(self) -> "None":
        respx.get(EMISSIONS_URL).mock(return_value=httpx.Response(401))
        registry = ProviderRegistry()
        registry.register("ibm", _config())

        with pytest.raises(AuthenticationError):
            await registry.dispatch(_first_quarter())

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_row(self) -> "None":
        respx.get(EMISSIONS_URL).mock(
            return_value=httpx.Response(
                200, json={"carbon_emissions": [{"carbon_emission": "lots"}]}
            )
        )
        registry = ProviderRegistry()
        registry.register("ibm", _config())

        with pytest.raises(MalformedReport):
            await registry.dispatch(_first_quarter())

    @pytest.mark.asyncio
    @respx.mock
    @pytest.mark.parametrize(
        "row",
        [
            None,
            "row",
            {"account_id": "a", "carbon_emission": 1.0, "group_by": "location"},
            {"account_id": "a", "carbon_emission": 1.0, "month": "2023-01"},
        ],
    )
    async def test_row_of_wrong_shape(self, row: "object") -> "None":
        respx.get(EMISSIONS_URL).mock(
            return_value=httpx.Response(200, json={"carbon_emissions": [row]})
        )
        provider = IbmProvider(_config())
        job = await provider.submit(_first_quarter())
        job.apply(await provider.poll(job))

        with pytest.raises(MalformedReport):
            await provider.fetch(job)

    @pytest.mark.asyncio
    @respx.mock
    async def test_follows_next_page(self) -> "None":
        def _rows(count: "int") -> "list[dict[str, object]]":
            return [
                {"account_id": "acc", "carbon_emission": 1000.0, "month": {"value": "2023-01"}}
                for _ in range(count)
            ]

        next_url = f"{EMISSIONS_URL}?enterprise_id={ENTERPRISE_ID}&offset=10&limit=10"
        route = respx.get(EMISSIONS_URL).mock(
            side_effect=[
                httpx.Response(
                    200,
                    json={
                        "carbon_emissions": _rows(10),
                        "offset": 0,
                        "limit": 10,
                        "total_count": 12,
                        "next": {"href": next_url, "offset": 10},
                    },
                ),
                httpx.Response(
                    200,
                    json={
                        "carbon_emissions": _rows(2),
                        "offset": 10,
                        "limit": 10,
                        "total_count": 12,
                    },
                ),
            ]
        )
        registry = ProviderRegistry(policy=BackoffPolicy(initial_delay=0.0, jitter=0.0))
        registry.register("ibm", _config(limit=10))

        records = await registry.dispatch(_first_quarter())
        await registry.close()

        assert len(records) == 12
        assert route.call_count == 2
        assert "limit=10" in str(route.calls[0].request.url)
        assert "offset=10" in str(route.calls[1].request.url)
