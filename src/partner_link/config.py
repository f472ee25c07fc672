from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

AZURE_CLI_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"

ENV_OVERRIDES: Dict[str, str] = {
    "PAL_CLIENT_ID": "client_id",
    "PAL_AUTHORITY": "authority",
    "PAL_REDIRECT_URI": "redirect_uri",
}


class ConfigurationError(ValueError):
    """Raised when static configuration cannot be used to start the tool."""


class AuthenticationSettings(BaseModel):
    """Public client registration used for delegated sign-in.

    The defaults target the Azure CLI first-party client, which is pre-consented
    for Azure Management in most directories. Override it with your own app
    registration when your organization blocks that client.
    """

    client_id: str = Field(default=AZURE_CLI_CLIENT_ID, description="Public client application ID")
    authority: str = Field(
        default="https://login.microsoftonline.com/organizations",
        description="Default authority used for sign-in",
    )
    redirect_uri: str = Field(
        default="http://localhost",
        description="Loopback redirect URI registered for the public client",
    )
    interactive_timeout_seconds: Optional[int] = Field(
        default=None,
        description="Abort a browser sign-in after this many seconds (None waits indefinitely)",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("client_id")
    @classmethod
    def ensure_client_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("client_id must not be empty")
        return value.strip()

    @field_validator("authority", "redirect_uri")
    @classmethod
    def ensure_absolute_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"{value!r} is not an absolute http(s) URL")
        return value.rstrip("/")

    @property
    def authority_host(self) -> str:
        parsed = urlparse(self.authority)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def redirect_port(self) -> Optional[int]:
        return urlparse(self.redirect_uri).port

    def authority_for(self, tenant_id: Optional[str]) -> str:
        if not tenant_id:
            return self.authority
        return f"{self.authority_host}/{tenant_id}"


class ManagementApiSettings(BaseModel):
    base_url: str = Field(
        default="https://management.azure.com",
        description="Azure Resource Manager endpoint. Override for national clouds if needed.",
    )
    scopes: List[str] = Field(
        default_factory=lambda: ["https://management.azure.com/user_impersonation"]
    )
    tenants_api_version: str = "2020-01-01"
    partners_api_version: str = "2018-02-01"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)

    model_config = ConfigDict(extra="forbid")

    @field_validator("scopes")
    @classmethod
    def ensure_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one Azure Management scope must be provided")
        return value

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class LinkSettings(BaseModel):
    delay_seconds: float = Field(
        default=1.0, ge=0, description="Pause between tenants during bulk linking"
    )
    discovery_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Wait before asking whether to skip a slow tenant"
    )
    allow_bare_number_fallback: bool = Field(
        default=True,
        description="Accept any 6-10 digit number in conflict errors as the linked Partner ID",
    )

    model_config = ConfigDict(extra="forbid")


class PartnerLinkConfig(BaseModel):
    authentication: AuthenticationSettings = Field(default_factory=AuthenticationSettings)
    management: ManagementApiSettings = Field(default_factory=ManagementApiSettings)
    link: LinkSettings = Field(default_factory=LinkSettings)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "PartnerLinkConfig":
        raw: Dict = {}
        if path is not None:
            config_path = Path(path)
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")

            with config_path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Configuration root in {config_path} must be a mapping")

        environ = os.environ if environ is None else environ
        auth_raw = dict(raw.get("authentication") or {})
        for env_name, field_name in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value:
                auth_raw[field_name] = value
        if auth_raw:
            raw["authentication"] = auth_raw

        return cls(**raw)
