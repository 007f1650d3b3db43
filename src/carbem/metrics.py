from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

# poll counts are small integers, default buckets are latency oriented
_POLL_ATTEMPT_BUCKETS = (1, 2, 3, 5, 8, 13, 21, 34)


class MetricsUpdater:
    """
    records the outcome of each dispatched emission query in
    Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._queries: "Counter" = Counter(
            "carbem_queries_total",
            "Total emission queries by provider and outcome",
            ["provider", "outcome"],
            registry=registry,
        )
        self._records: "Counter" = Counter(
            "carbem_records_total",
            "Total emission records returned by provider",
            ["provider"],
            registry=registry,
        )
        self._poll_attempts: "Histogram" = Histogram(
            "carbem_poll_attempts",
            "Status checks needed before a report job reached a terminal state",
            ["provider"],
            buckets=_POLL_ATTEMPT_BUCKETS,
            registry=registry,
        )
        self._duration: "Histogram" = Histogram(
            "carbem_query_duration_seconds",
            "Duration of a full submit, poll and fetch cycle",
            ["provider"],
            registry=registry,
        )

    @property
    def registry(self) -> "CollectorRegistry":
        return self._registry

    def observe_query(
        self, provider: "str", outcome: "str", duration_seconds: "float"
    ) -> "None":
        """
        outcome is "success" or the name of the error that ended the query.
        """
        self._queries.labels(provider=provider, outcome=outcome).inc()
        self._duration.labels(provider=provider).observe(duration_seconds)

    def observe_poll_attempts(self, provider: "str", attempts: "int") -> "None":
        self._poll_attempts.labels(provider=provider).observe(attempts)

    def inc_records(self, provider: "str", count: "int") -> "None":
        self._records.labels(provider=provider).inc(count)
