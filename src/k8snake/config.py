"""Session configuration model."""

import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigurationError

ENV_PREFIX = "K8SNAKE_"

DEFAULT_READY_TIMEOUT = 10.0
DEFAULT_CONTENT_TYPE = "application/json"


class SessionConfig(BaseModel):
    """Everything a session needs to reach and authenticate to the target pod.

    Built once at startup and passed explicitly to the orchestrator.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", frozen=True)

    # Kubernetes target
    namespace: str = Field(min_length=1, description="Namespace of the target service")
    service_name: str = Field(min_length=1, description="Service whose pods are targeted")
    service_port: int = Field(
        default=8080, ge=1, le=65535, description="Remote container port"
    )
    kubeconfig: str | None = Field(None, description="Path to kubeconfig file")
    context: str | None = Field(None, description="Kubeconfig context to use")
    kubectl_path: str = Field(default="kubectl", min_length=1)
    ready_timeout: float = Field(
        default=DEFAULT_READY_TIMEOUT,
        gt=0,
        le=300.0,
        description="Seconds to wait for the tunnel to become ready",
    )

    # Keycloak
    client_secret_id: str = Field(min_length=1, description="Keycloak client id used in the secret name")
    realm_name: str = Field(min_length=1, description="Keycloak realm")
    keycloak_url: str | None = Field(None, description="Keycloak base URL")
    token_url: str | None = Field(None, description="Explicit token endpoint URL")
    token_timeout: float | None = Field(
        default=None, gt=0, description="Token request timeout, None waits forever"
    )

    # Outgoing requests
    content_type: str = Field(default=DEFAULT_CONTENT_TYPE, min_length=1)
    custom_header_name: str | None = Field(None, description="Header set by default")
    custom_header_value: str = Field(default="")

    @field_validator("namespace", "service_name")
    @classmethod
    def validate_k8s_name(cls, v: str) -> str:
        """Validate Kubernetes object name format."""
        if not v.replace("-", "").replace(".", "").isalnum() or v != v.lower():
            raise ValueError(
                "Name must contain only lowercase alphanumeric characters, '-' and '.'"
            )
        return v

    @field_validator("keycloak_url", "token_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def validate_token_source(self) -> "SessionConfig":
        if self.token_url is None and self.keycloak_url is None:
            raise ValueError("Either token_url or keycloak_url must be set")
        return self

    @property
    def secret_name(self) -> str:
        """Name of the secret holding CLIENT_ID and CLIENT_SECRET."""
        return f"keycloak-client-secret-{self.client_secret_id}-{self.realm_name}"

    @property
    def resolved_token_url(self) -> str:
        """Token endpoint, derived from the Keycloak base URL when not explicit."""
        if self.token_url:
            return self.token_url
        base = (self.keycloak_url or "").rstrip("/")
        return f"{base}/realms/{self.realm_name}/protocol/openid-connect/token"

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: Any
    ) -> "SessionConfig":
        """Build a config from ``K8SNAKE_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Values that take precedence over the environment

        Raises:
            ConfigurationError: If the resulting configuration is invalid
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update(overrides)

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid session configuration: {e}") from e
