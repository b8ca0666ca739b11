"""
Client configuration

ClientConfig is an immutable snapshot taken when a client bootstraps. Options
may be given in snake_case or in the camelCase spelling used by the other
SDK bindings; unknown options are ignored so older config files keep loading.
"""

from typing import Any, Callable, Optional, Tuple
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

DEFAULT_MAX_CONTENT_SIZE = 100_000_000


class Environment(str, Enum):
    """Named, isolated instances of the XMTP network"""

    DEV = "dev"
    PRODUCTION = "production"
    LOCAL = "local"


class ClientConfig(BaseModel):
    """Options recognised at bootstrap time"""

    model_config = ConfigDict(frozen=True, extra="ignore", arbitrary_types_allowed=True)

    environment: Environment = Field(
        Environment.DEV, validation_alias=AliasChoices("environment", "env"),
        description="Network environment"
    )
    api_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("api_url", "apiUrl"),
        description="Endpoint override; wins over the environment's URL"
    )
    app_version: Optional[str] = Field(
        None, validation_alias=AliasChoices("app_version", "appVersion", "appVersionTag"),
        description="Application tag attached to published contacts"
    )
    skip_network_publish: bool = Field(
        False, validation_alias=AliasChoices("skip_network_publish", "skipNetworkPublish",
                                              "skipContactPublishing")
    )
    persist_identity_cache: bool = Field(
        True, validation_alias=AliasChoices("persist_identity_cache", "persistIdentityCache",
                                              "persistConversations")
    )
    max_content_size_bytes: int = Field(
        DEFAULT_MAX_CONTENT_SIZE, gt=0,
        validation_alias=AliasChoices("max_content_size_bytes", "maxContentSizeBytes",
                                      "maxContentSize")
    )
    codecs: Tuple[Any, ...] = Field(
        (), validation_alias=AliasChoices("codecs", "codecRegistry"),
        description="Extra content codecs; the text codec is always registered"
    )
    pre_create_identity_hook: Optional[Callable[[], Any]] = Field(
        None, validation_alias=AliasChoices("pre_create_identity_hook", "preCreateIdentityHook",
                                              "preCreateIdentityCallback")
    )
    pre_enable_identity_hook: Optional[Callable[[], Any]] = Field(
        None, validation_alias=AliasChoices("pre_enable_identity_hook", "preEnableIdentityHook",
                                              "preEnableIdentityCallback")
    )
    private_key_override: Optional[bytes] = Field(
        None, repr=False,
        validation_alias=AliasChoices("private_key_override", "privateKeyOverride")
    )
    signature_timeout: Optional[float] = Field(
        None, gt=0, validation_alias=AliasChoices("signature_timeout", "signatureTimeout"),
        description="Seconds to wait for the signer before giving up"
    )

    def with_overrides(self, **changes: Any) -> 'ClientConfig':
        """Return a validated copy with some options replaced"""
        data = self.model_dump()
        data.update(changes)
        return ClientConfig.model_validate(data)
