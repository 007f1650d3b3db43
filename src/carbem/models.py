import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from carbem.errors import InvalidQuery


def _as_utc(value: "datetime") -> "datetime":
    # naive timestamps are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _next_month(value: "datetime") -> "datetime":
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def parse_timestamp(value: "str") -> "datetime":
    """
    parses an RFC3339 timestamp (a trailing 'Z' is accepted) or a plain
    YYYY-MM-DD date into an aware UTC datetime.
    """
    return _as_utc(datetime.fromisoformat(value))


def format_timestamp(value: "datetime") -> "str":
    return _as_utc(value).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class TimePeriod:
    """
    TimePeriod is a half-open [start, end) interval in UTC.
    """

    start: "datetime"
    end: "datetime"

    def __post_init__(self) -> "None":
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))

    @classmethod
    def for_month(cls, year: "int", month: "int") -> "TimePeriod":
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        return cls(start, _next_month(start))

    def intersection(self, other: "TimePeriod") -> "TimePeriod | None":
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if start >= end:
            return None
        return TimePeriod(start, end)

    def months(self) -> "Iterator[TimePeriod]":
        """
        yields every calendar month touching the period, clipped
        to the period boundaries.
        """
        cursor = self.start.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        while cursor < self.end:
            following = _next_month(cursor)
            yield TimePeriod(max(cursor, self.start), min(following, self.end))
            cursor = following

    def to_json_dict(self) -> "dict[str, str]":
        return {
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
        }


def _string_set(
    data: "dict[str, Any]",
    key: "str",
) -> "frozenset[str] | None":
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidQuery(f"{key} must be a list of strings")
    return frozenset(value)


@dataclass(frozen=True, slots=True)
class UnifiedQuery:
    """
    UnifiedQuery is the provider-agnostic description of what
    emissions to retrieve.
    """

    provider: "str"
    time_period: "TimePeriod"
    # provider specific ids (subscriptions, locations...),
    # empty means every region the provider knows about
    regions: "frozenset[str]" = frozenset()
    # None means unfiltered
    services: "frozenset[str] | None" = None
    resources: "frozenset[str] | None" = None

    def __post_init__(self) -> "None":
        object.__setattr__(self, "regions", frozenset(self.regions))
        if self.services is not None:
            object.__setattr__(self, "services", frozenset(self.services))
        if self.resources is not None:
            object.__setattr__(self, "resources", frozenset(self.resources))

    def validate(self) -> "None":
        if not self.provider or not self.provider.strip():
            raise InvalidQuery("provider must not be empty")
        if self.time_period.start >= self.time_period.end:
            raise InvalidQuery(
                "time_period start must be before end "
                f"({format_timestamp(self.time_period.start)} >= "
                f"{format_timestamp(self.time_period.end)})"
            )

    @property
    def active_filters(self) -> "frozenset[str]":
        active = set()
        if self.services is not None:
            active.add("services")
        if self.resources is not None:
            active.add("resources")
        return frozenset(active)

    def without_filters(self) -> "UnifiedQuery":
        return replace(self, services=None, resources=None)

    @classmethod
    def from_json_dict(cls, provider: "str", data: "Any") -> "UnifiedQuery":
        """
        builds a query from the JSON shape
        {start_date, end_date, regions?, services?, resources?}.
        """
        if not isinstance(data, dict):
            raise InvalidQuery("query must be a JSON object")

        bounds = []
        for key in ("start_date", "end_date"):
            raw = data.get(key)
            if not isinstance(raw, str):
                raise InvalidQuery(f"{key} is required and must be a string")
            try:
                bounds.append(parse_timestamp(raw))
            except ValueError as e:
                raise InvalidQuery(f"{key} is not an RFC3339 timestamp: {raw!r}") from e

        query = cls(
            provider=provider,
            time_period=TimePeriod(bounds[0], bounds[1]),
            regions=_string_set(data, "regions") or frozenset(),
            services=_string_set(data, "services"),
            resources=_string_set(data, "resources"),
        )
        query.validate()
        return query


@dataclass(frozen=True, slots=True)
class EmissionMetadata:
    energy_kwh: "float | None" = None
    provider_data: "dict[str, Any]" = field(default_factory=dict)

    def to_json_dict(self) -> "dict[str, Any]":
        result: "dict[str, Any]" = {}
        if self.energy_kwh is not None:
            result["energy_kwh"] = self.energy_kwh
        if self.provider_data:
            result["provider_data"] = dict(self.provider_data)
        return result


@dataclass(frozen=True, slots=True)
class UnifiedRecord:
    """
    UnifiedRecord is a single emission data point normalized
    from a provider report row.
    """

    provider: "str"
    region: "str"
    time_period: "TimePeriod"
    emissions_kg_co2eq: "float"
    service: "str | None" = None
    resource: "str | None" = None
    metadata: "EmissionMetadata | None" = None

    def __post_init__(self) -> "None":
        if not math.isfinite(self.emissions_kg_co2eq) or self.emissions_kg_co2eq < 0:
            raise ValueError(
                f"emissions must be a non-negative number, got {self.emissions_kg_co2eq}"
            )

    def to_json_dict(self) -> "dict[str, Any]":
        result: "dict[str, Any]" = {
            "provider": self.provider,
            "region": self.region,
        }
        if self.service is not None:
            result["service"] = self.service
        if self.resource is not None:
            result["resource"] = self.resource
        result["time_period"] = self.time_period.to_json_dict()
        result["emissions_kg_co2eq"] = self.emissions_kg_co2eq
        if self.metadata is not None:
            metadata = self.metadata.to_json_dict()
            if metadata:
                result["metadata"] = metadata
        return result


def records_to_json(records: "Iterable[UnifiedRecord]") -> "list[dict[str, Any]]":
    return [record.to_json_dict() for record in records]
