import enum
from dataclasses import dataclass
from typing import Any

from carbem.errors import InvalidConfig, MissingCredential, UnsupportedProvider

AZURE_BASE_URL = "https://management.azure.com"
IBM_BASE_URL = "https://api.carbon-calculator.cloud.ibm.com"

# seconds, applied to every HTTP call a provider makes
DEFAULT_REQUEST_TIMEOUT = 30.0


class ReportType(enum.Enum):
    """
    granularity of an Azure carbon report: one aggregate row per
    region/service for the whole period, or one per calendar month.
    """

    OVERALL = "overall"
    MONTHLY = "monthly"


class IbmGroupBy(enum.Enum):
    MONTH = "month"
    LOCATION = "location"
    SERVICE = "service"
    ACCOUNT = "account"


@dataclass(frozen=True, slots=True)
class AzureConfig:
    access_token: "str"
    tenant_id: "str | None" = None
    # used when the query names no regions
    subscription_ids: "frozenset[str] | None" = None
    report_type: "ReportType" = ReportType.OVERALL
    request_timeout: "float" = DEFAULT_REQUEST_TIMEOUT
    base_url: "str" = AZURE_BASE_URL

    def __post_init__(self) -> "None":
        if not self.access_token:
            raise MissingCredential("azure access_token is required")
        if self.subscription_ids is not None:
            object.__setattr__(self, "subscription_ids", frozenset(self.subscription_ids))
        if not isinstance(self.report_type, ReportType):
            object.__setattr__(self, "report_type", _enum(ReportType, self.report_type))
        if self.request_timeout <= 0:
            raise InvalidConfig("request_timeout must be positive")


@dataclass(frozen=True, slots=True)
class IbmConfig:
    api_key: "str"
    enterprise_id: "str"
    # only meaningful for enterprise accounts
    enterprise_account_id: "str | None" = None
    group_by: "IbmGroupBy | None" = None
    # page size and first row; the API defaults to 10 rows from 0
    limit: "int | None" = None
    offset: "int | None" = None
    request_timeout: "float" = DEFAULT_REQUEST_TIMEOUT
    base_url: "str" = IBM_BASE_URL

    def __post_init__(self) -> "None":
        if not self.api_key:
            raise MissingCredential("ibm api_key is required")
        if not self.enterprise_id:
            raise InvalidConfig("ibm enterprise_id is required")
        if self.group_by is not None and not isinstance(self.group_by, IbmGroupBy):
            object.__setattr__(self, "group_by", _enum(IbmGroupBy, self.group_by))
        if self.limit is not None and self.limit < 1:
            raise InvalidConfig("limit must be >= 1")
        if self.offset is not None and self.offset < 0:
            raise InvalidConfig("offset must be >= 0")
        if self.request_timeout <= 0:
            raise InvalidConfig("request_timeout must be positive")


ProviderConfig = AzureConfig | IbmConfig


def _enum(kind: "type[enum.Enum]", value: "Any") -> "Any":
    try:
        return kind(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in kind)
        raise InvalidConfig(f"{value!r} is not one of: {allowed}") from e


def _optional_str(data: "dict[str, Any]", key: "str") -> "str | None":
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidConfig(f"{key} must be a string")
    return value


def _optional_int(data: "dict[str, Any]", key: "str") -> "int | None":
    value = data.get(key)
    if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
        raise InvalidConfig(f"{key} must be an integer")
    return value


def _timeout(data: "dict[str, Any]") -> "float":
    value = data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfig("request_timeout must be a number")
    return float(value)


def _azure_from_dict(data: "dict[str, Any]") -> "AzureConfig":
    subscription_ids = data.get("subscription_ids")
    if subscription_ids is not None and (
        not isinstance(subscription_ids, list)
        or not all(isinstance(s, str) for s in subscription_ids)
    ):
        raise InvalidConfig("subscription_ids must be a list of strings")

    return AzureConfig(
        access_token=_optional_str(data, "access_token") or "",
        tenant_id=_optional_str(data, "tenant_id"),
        subscription_ids=frozenset(subscription_ids) if subscription_ids else None,
        report_type=_enum(ReportType, data.get("report_type", "overall")),
        request_timeout=_timeout(data),
        base_url=_optional_str(data, "base_url") or AZURE_BASE_URL,
    )


def _ibm_from_dict(data: "dict[str, Any]") -> "IbmConfig":
    group_by = data.get("group_by")
    return IbmConfig(
        api_key=_optional_str(data, "api_key") or "",
        enterprise_id=_optional_str(data, "enterprise_id") or "",
        enterprise_account_id=_optional_str(data, "enterprise_account_id"),
        group_by=_enum(IbmGroupBy, group_by) if group_by is not None else None,
        limit=_optional_int(data, "limit"),
        offset=_optional_int(data, "offset"),
        request_timeout=_timeout(data),
        base_url=_optional_str(data, "base_url") or IBM_BASE_URL,
    )


_PARSERS = {
    "azure": _azure_from_dict,
    "ibm": _ibm_from_dict,
}


def parse_provider_config(provider: "str", data: "Any") -> "ProviderConfig":
    """
    turns a decoded JSON object into the typed config of the
    given provider. Validation happens here, before any provider
    object is built.
    """
    parser = _PARSERS.get(provider.strip().lower())
    if parser is None:
        raise UnsupportedProvider(provider)
    if not isinstance(data, dict):
        raise InvalidConfig(f"{provider} config must be a JSON object")
    return parser(data)
