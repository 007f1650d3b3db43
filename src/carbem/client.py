import asyncio
import json
from typing import Any

import structlog

from carbem.config import Config
from carbem.errors import InvalidConfig, InvalidQuery
from carbem.metrics import MetricsUpdater
from carbem.models import UnifiedQuery, UnifiedRecord, records_to_json
from carbem.polling import BackoffPolicy
from carbem.provider.config import AzureConfig, IbmConfig, parse_provider_config
from carbem.registry import ProviderRegistry

logger = structlog.get_logger()


def _decode(raw: "str", error: "type[Exception]", what: "str") -> "Any":
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise error(f"invalid {what} JSON: {e}") from e


async def get_emissions_json(
    provider_name: "str",
    config_json: "str",
    query_json: "str",
    cancel_event: "asyncio.Event | None" = None,
    policy: "BackoffPolicy | None" = None,
    metrics: "MetricsUpdater | None" = None,
) -> "str":
    """
    runs a single query described entirely by JSON and returns the
    records as a JSON array. Both documents are validated before any
    provider is created.
    """
    config = parse_provider_config(
        provider_name, _decode(config_json, InvalidConfig, "config")
    )
    query = UnifiedQuery.from_json_dict(
        provider_name, _decode(query_json, InvalidQuery, "query")
    )

    registry = ProviderRegistry(metrics=metrics, policy=policy)
    registry.register(provider_name, config)
    try:
        records = await registry.dispatch(query, cancel_event)
    finally:
        await registry.close()

    return json.dumps(records_to_json(records))


class CarbemClient:
    """
    CarbemClient answers emission queries against the providers it
    was built with. Use CarbemClient.builder() to create one.
    """

    def __init__(self, registry: "ProviderRegistry") -> "None":
        self._registry = registry

    @staticmethod
    def builder() -> "CarbemClientBuilder":
        return CarbemClientBuilder()

    async def query_emissions(
        self,
        query: "UnifiedQuery",
        cancel_event: "asyncio.Event | None" = None,
    ) -> "list[UnifiedRecord]":
        return await self._registry.dispatch(query, cancel_event)

    def available_providers(self) -> "list[str]":
        return self._registry.available_providers()

    def has_provider(self, name: "str") -> "bool":
        return self._registry.has_provider(name)

    async def close(self) -> "None":
        await self._registry.close()

    async def __aenter__(self) -> "CarbemClient":
        return self

    async def __aexit__(self, *exc_info: "object") -> "None":
        await self.close()


class CarbemClientBuilder:
    """
    collects provider configurations and builds a CarbemClient.
    Every with_* call validates its config immediately.
    """

    def __init__(self) -> "None":
        # (name, config) pairs, providers are only created by build()
        self._configs: "list[tuple[str, AzureConfig | IbmConfig]]" = []
        self._metrics: "MetricsUpdater | None" = None
        self._policy: "BackoffPolicy | None" = None

    def with_azure(self, config: "AzureConfig") -> "CarbemClientBuilder":
        self._configs.append(("azure", config))
        return self

    def with_azure_from_env(self, env: "Config | None" = None) -> "CarbemClientBuilder":
        env = env or Config.from_env()
        return self.with_azure(env.azure_config())

    def with_ibm(self, config: "IbmConfig") -> "CarbemClientBuilder":
        self._configs.append(("ibm", config))
        return self

    def with_ibm_from_env(self, env: "Config | None" = None) -> "CarbemClientBuilder":
        env = env or Config.from_env()
        return self.with_ibm(env.ibm_config())

    def with_provider_from_json(
        self, provider_name: "str", config_json: "str"
    ) -> "CarbemClientBuilder":
        config = parse_provider_config(
            provider_name, _decode(config_json, InvalidConfig, "config")
        )
        self._configs.append((provider_name.strip().lower(), config))
        return self

    def with_metrics(self, metrics: "MetricsUpdater") -> "CarbemClientBuilder":
        self._metrics = metrics
        return self

    def with_backoff(self, policy: "BackoffPolicy") -> "CarbemClientBuilder":
        self._policy = policy
        return self

    def build(self) -> "CarbemClient":
        if not self._configs:
            raise InvalidConfig("at least one provider must be configured")

        registry = ProviderRegistry(metrics=self._metrics, policy=self._policy)
        for name, config in self._configs:
            registry.register(name, config)

        logger.debug("client_built", providers=registry.available_providers())
        return CarbemClient(registry)
