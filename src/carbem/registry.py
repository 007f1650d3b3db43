import asyncio
import time
from dataclasses import replace
from typing import Any, Callable

import structlog

from carbem.errors import (
    CarbemError,
    InvalidConfig,
    ProviderNotConfigured,
    UnsupportedFilter,
    UnsupportedProvider,
)
from carbem.metrics import MetricsUpdater
from carbem.models import UnifiedQuery, UnifiedRecord
from carbem.polling import BackoffPolicy, JobPoller
from carbem.provider.azure import AzureProvider
from carbem.provider.base import CarbonProvider, apply_filters
from carbem.provider.config import (
    AzureConfig,
    IbmConfig,
    ProviderConfig,
    parse_provider_config,
)
from carbem.provider.ibm import IbmProvider

logger = structlog.get_logger()

# provider name -> (config type, factory)
_KNOWN_PROVIDERS: "dict[str, tuple[type, Callable[[Any], CarbonProvider]]]" = {
    "azure": (AzureConfig, AzureProvider),
    "ibm": (IbmConfig, IbmProvider),
}


def known_providers() -> "list[str]":
    return sorted(_KNOWN_PROVIDERS)


def _restrict_filters(query: "UnifiedQuery", supported: "frozenset[str]") -> "UnifiedQuery":
    return replace(
        query,
        services=query.services if "services" in supported else None,
        resources=query.resources if "resources" in supported else None,
    )


class ProviderRegistry:
    """
    ProviderRegistry maps provider names to configured providers and
    runs queries against them. It is meant to be filled once and then
    only read, so concurrent dispatch calls share nothing mutable.
    """

    def __init__(
        self,
        metrics: "MetricsUpdater | None" = None,
        policy: "BackoffPolicy | None" = None,
    ) -> "None":
        self._providers: "dict[str, CarbonProvider]" = {}
        # providers replaced by a later registration, closed with the rest
        self._replaced: "list[CarbonProvider]" = []
        self._metrics = metrics
        self._policy = policy or BackoffPolicy()

    def register(
        self,
        name: "str",
        config: "ProviderConfig | dict[str, Any]",
    ) -> "CarbonProvider":
        """
        builds the provider called name from a typed config or from
        its decoded JSON form.
        """
        key = name.strip().lower()
        known = _KNOWN_PROVIDERS.get(key)
        if known is None:
            raise UnsupportedProvider(name)

        config_type, factory = known
        if isinstance(config, dict):
            config = parse_provider_config(key, config)
        elif not isinstance(config, config_type):
            raise InvalidConfig(
                f"{key} expects {config_type.__name__}, got {type(config).__name__}"
            )

        provider = factory(config)
        self.add(provider)
        return provider

    def add(self, provider: "CarbonProvider") -> "None":
        """
        registers an already built provider under its own name.
        """
        key = provider.name.lower()
        previous = self._providers.get(key)
        if previous is not None:
            logger.warning("provider_replaced", provider=key)
            self._replaced.append(previous)
        self._providers[key] = provider
        logger.debug("provider_registered", provider=key)

    def get(self, name: "str") -> "CarbonProvider":
        provider = self._providers.get(name.strip().lower())
        if provider is None:
            raise ProviderNotConfigured(name)
        return provider

    def available_providers(self) -> "list[str]":
        return list(self._providers)

    def has_provider(self, name: "str") -> "bool":
        return name.strip().lower() in self._providers

    async def close(self) -> "None":
        """
        closes every provider session.
        """
        for provider in [*self._providers.values(), *self._replaced]:
            await provider.close()
        self._replaced.clear()

    async def dispatch(
        self,
        query: "UnifiedQuery",
        cancel_event: "asyncio.Event | None" = None,
        poller: "JobPoller | None" = None,
    ) -> "list[UnifiedRecord]":
        """
        runs query to completion against its provider: submit, poll
        until the report is ready, fetch and filter. Either the full
        record list is returned or the first fatal error is raised.
        """
        query.validate()
        provider = self.get(query.provider)
        poller = poller or JobPoller(self._policy, cancel_event)

        started = time.monotonic()
        outcome = "success"
        try:
            records = await self._run(provider, query, poller)
        except CarbemError as e:
            outcome = type(e).__name__
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        finally:
            if self._metrics is not None:
                self._metrics.observe_query(
                    provider.name, outcome, time.monotonic() - started
                )

        if self._metrics is not None:
            self._metrics.inc_records(provider.name, len(records))
        return records

    async def _run(
        self,
        provider: "CarbonProvider",
        query: "UnifiedQuery",
        poller: "JobPoller",
    ) -> "list[UnifiedRecord]":
        log = logger.bind(provider=provider.name)
        filter_locally = False

        try:
            job = await poller.retry(lambda: provider.submit(query), "submit")
        except UnsupportedFilter as e:
            # resubmit with what the provider understands, finish the job here
            log.info("filters_applied_locally", filters=sorted(e.filters))
            filter_locally = True
            pushed = _restrict_filters(query, provider.pushdown_filters)
            job = await poller.retry(lambda: provider.submit(pushed), "submit")

        try:
            await poller.wait(provider, job)
        finally:
            if self._metrics is not None:
                self._metrics.observe_poll_attempts(provider.name, job.attempts)

        records = list(await poller.retry(lambda: provider.fetch(job), "fetch"))
        if filter_locally:
            records = apply_filters(records, query.services, query.resources)

        log.info("query_complete", job_id=job.id, records=len(records))
        return records
