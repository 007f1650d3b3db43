import os
from dataclasses import dataclass
from typing import Mapping

from carbem.errors import MissingCredential
from carbem.provider.config import AzureConfig, IbmConfig

# checked in order, the first non-empty value wins
AZURE_TOKEN_VARS = ("CARBEM_AZURE_ACCESS_TOKEN", "AZURE_TOKEN")
IBM_API_KEY_VARS = ("CARBEM_IBM_API_KEY", "IBM_API_KEY")
IBM_ENTERPRISE_ID_VARS = ("CARBEM_IBM_ENTERPRISE_ID", "IBM_ENTERPRISE_ID")


def _first_set(env: "Mapping[str, str]", names: "tuple[str, ...]") -> "str":
    for name in names:
        value = env.get(name, "")
        if value:
            return value
    return ""


@dataclass
class Config:
    azure_access_token: "str" = ""
    ibm_api_key: "str" = ""
    ibm_enterprise_id: "str" = ""

    @classmethod
    def from_env(cls, env: "Mapping[str, str] | None" = None) -> "Config":
        env = os.environ if env is None else env
        return cls(
            azure_access_token=_first_set(env, AZURE_TOKEN_VARS),
            ibm_api_key=_first_set(env, IBM_API_KEY_VARS),
            ibm_enterprise_id=_first_set(env, IBM_ENTERPRISE_ID_VARS),
        )

    @property
    def azure_enabled(self) -> "bool":
        return bool(self.azure_access_token)

    @property
    def ibm_enabled(self) -> "bool":
        return bool(self.ibm_api_key and self.ibm_enterprise_id)

    def azure_config(self) -> "AzureConfig":
        if not self.azure_enabled:
            raise MissingCredential(
                f"set one of {', '.join(AZURE_TOKEN_VARS)} to use azure"
            )
        return AzureConfig(access_token=self.azure_access_token)

    def ibm_config(self) -> "IbmConfig":
        if not self.ibm_api_key:
            raise MissingCredential(f"set one of {', '.join(IBM_API_KEY_VARS)} to use ibm")
        if not self.ibm_enterprise_id:
            raise MissingCredential(
                f"set one of {', '.join(IBM_ENTERPRISE_ID_VARS)} to use ibm"
            )
        return IbmConfig(api_key=self.ibm_api_key, enterprise_id=self.ibm_enterprise_id)
