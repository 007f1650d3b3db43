from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from carbem.models import TimePeriod, UnifiedQuery
from carbem.polling import BackoffPolicy


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def fast_policy() -> "BackoffPolicy":
    """
    backoff policy without any real waiting.
    """
    return BackoffPolicy(initial_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture()
def january() -> "TimePeriod":
    return TimePeriod(
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 2, 1, tzinfo=timezone.utc),
    )


@pytest.fixture()
def azure_query(january: "TimePeriod") -> "UnifiedQuery":
    return UnifiedQuery(provider="azure", time_period=january, regions={"sub-1"})
