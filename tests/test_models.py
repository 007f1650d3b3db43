from datetime import datetime, timedelta, timezone

import pytest

from carbem.errors import InvalidQuery
from carbem.models import (
    EmissionMetadata,
    TimePeriod,
    UnifiedQuery,
    UnifiedRecord,
    format_timestamp,
    parse_timestamp,
)


def _utc(*args: "int") -> "datetime":
    return datetime(*args, tzinfo=timezone.utc)


class TestTimePeriod:
    def test_naive_timestamps_are_utc(self) -> "None":
        period = TimePeriod(datetime(2024, 1, 1), datetime(2024, 1, 2))
        assert period.start == _utc(2024, 1, 1)
        assert period.start.tzinfo is timezone.utc

    def test_offsets_are_converted_to_utc(self) -> "None":
        plus_two = timezone(timedelta(hours=2))
        period = TimePeriod(
            datetime(2024, 1, 1, 2, tzinfo=plus_two),
            datetime(2024, 1, 2, tzinfo=plus_two),
        )
        assert period.start == _utc(2024, 1, 1)
        assert period.start.utcoffset() == timedelta(0)

    def test_for_month_handles_december(self) -> "None":
        period = TimePeriod.for_month(2023, 12)
        assert period.start == _utc(2023, 12, 1)
        assert period.end == _utc(2024, 1, 1)

    def test_months_are_clipped(self) -> "None":
        period = TimePeriod(_utc(2024, 1, 15), _utc(2024, 3, 10))
        months = list(period.months())
        assert months == [
            TimePeriod(_utc(2024, 1, 15), _utc(2024, 2, 1)),
            TimePeriod(_utc(2024, 2, 1), _utc(2024, 3, 1)),
            TimePeriod(_utc(2024, 3, 1), _utc(2024, 3, 10)),
        ]

    def test_intersection(self) -> "None":
        a = TimePeriod(_utc(2024, 1, 1), _utc(2024, 2, 1))
        b = TimePeriod(_utc(2024, 1, 20), _utc(2024, 3, 1))
        assert a.intersection(b) == TimePeriod(_utc(2024, 1, 20), _utc(2024, 2, 1))
        assert a.intersection(TimePeriod(_utc(2024, 2, 1), _utc(2024, 3, 1))) is None


class TestTimestamps:
    def test_parse_accepts_z_suffix(self) -> "None":
        assert parse_timestamp("2024-01-01T00:00:00Z") == _utc(2024, 1, 1)

    def test_parse_accepts_plain_date(self) -> "None":
        assert parse_timestamp("2024-02-29") == _utc(2024, 2, 29)

    def test_format_uses_z_suffix(self) -> "None":
        assert format_timestamp(_utc(2024, 1, 1)) == "2024-01-01T00:00:00Z"


class TestUnifiedQueryValidate:
    def test_valid_query(self, january: "TimePeriod") -> "None":
        UnifiedQuery(provider="azure", time_period=january).validate()

    @pytest.mark.parametrize("hours", [0, -1, -24 * 40])
    def test_start_not_before_end(self, hours: "int") -> "None":
        start = _utc(2024, 1, 1)
        query = UnifiedQuery(
            provider="azure",
            time_period=TimePeriod(start, start + timedelta(hours=hours)),
        )
        with pytest.raises(InvalidQuery):
            query.validate()

    @pytest.mark.parametrize("provider", ["", "   "])
    def test_empty_provider(self, provider: "str", january: "TimePeriod") -> "None":
        with pytest.raises(InvalidQuery):
            UnifiedQuery(provider=provider, time_period=january).validate()

    def test_collections_become_frozensets(self, january: "TimePeriod") -> "None":
        query = UnifiedQuery(
            provider="azure",
            time_period=january,
            regions=["sub-1", "sub-1"],
            services=["compute"],
        )
        assert query.regions == frozenset({"sub-1"})
        assert query.services == frozenset({"compute"})
        assert query.resources is None
        assert query.active_filters == frozenset({"services"})

    def test_without_filters(self, january: "TimePeriod") -> "None":
        query = UnifiedQuery(
            provider="azure",
            time_period=january,
            services={"compute"},
            resources={"vm-1"},
        )
        plain = query.without_filters()
        assert plain.services is None
        assert plain.resources is None
        assert plain.time_period == query.time_period


class TestUnifiedQueryFromJson:
    def test_parses_full_query(self) -> "None":
        query = UnifiedQuery.from_json_dict(
            "azure",
            {
                "start_date": "2024-01-01T00:00:00Z",
                "end_date": "2024-02-01T00:00:00Z",
                "regions": ["sub-1"],
                "services": ["compute"],
            },
        )
        assert query.provider == "azure"
        assert query.time_period.start == _utc(2024, 1, 1)
        assert query.regions == frozenset({"sub-1"})
        assert query.services == frozenset({"compute"})
        assert query.resources is None

    def test_missing_dates(self) -> "None":
        with pytest.raises(InvalidQuery, match="start_date"):
            UnifiedQuery.from_json_dict("azure", {"end_date": "2024-02-01T00:00:00Z"})

    def test_unparseable_date(self) -> "None":
        with pytest.raises(InvalidQuery, match="RFC3339"):
            UnifiedQuery.from_json_dict(
                "azure", {"start_date": "yesterday", "end_date": "2024-02-01T00:00:00Z"}
            )

    def test_reversed_dates(self) -> "None":
        with pytest.raises(InvalidQuery):
            UnifiedQuery.from_json_dict(
                "azure",
                {"start_date": "2024-02-01T00:00:00Z", "end_date": "2024-01-01T00:00:00Z"},
            )

    def test_non_object(self) -> "None":
        with pytest.raises(InvalidQuery):
            UnifiedQuery.from_json_dict("azure", ["2024-01-01"])

    def test_regions_must_be_strings(self) -> "None":
        with pytest.raises(InvalidQuery, match="regions"):
            UnifiedQuery.from_json_dict(
                "azure",
                {
                    "start_date": "2024-01-01T00:00:00Z",
                    "end_date": "2024-02-01T00:00:00Z",
                    "regions": "sub-1",
                },
            )


class TestUnifiedRecord:
    def test_negative_emissions_rejected(self, january: "TimePeriod") -> "None":
        with pytest.raises(ValueError):
            UnifiedRecord(
                provider="azure",
                region="sub-1",
                time_period=january,
                emissions_kg_co2eq=-0.1,
            )

    def test_nan_emissions_rejected(self, january: "TimePeriod") -> "None":
        with pytest.raises(ValueError):
            UnifiedRecord(
                provider="azure",
                region="sub-1",
                time_period=january,
                emissions_kg_co2eq=float("nan"),
            )

    def test_to_json_dict_omits_missing_fields(self, january: "TimePeriod") -> "None":
        record = UnifiedRecord(
            provider="azure",
            region="sub-1",
            time_period=january,
            emissions_kg_co2eq=1.5,
        )
        assert record.to_json_dict() == {
            "provider": "azure",
            "region": "sub-1",
            "time_period": {
                "start": "2024-01-01T00:00:00Z",
                "end": "2024-02-01T00:00:00Z",
            },
            "emissions_kg_co2eq": 1.5,
        }

    def test_to_json_dict_includes_metadata(self, january: "TimePeriod") -> "None":
        record = UnifiedRecord(
            provider="ibm",
            region="Dallas",
            service="Cloud Object Storage",
            time_period=january,
            emissions_kg_co2eq=2.0,
            metadata=EmissionMetadata(energy_kwh=5.0, provider_data={"account_id": "a"}),
        )
        data = record.to_json_dict()
        assert data["service"] == "Cloud Object Storage"
        assert data["metadata"] == {"energy_kwh": 5.0, "provider_data": {"account_id": "a"}}
