import logging
import os
from typing import List, Optional, Any, Dict, Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_settings_instance: Optional["Settings"] = None

dont_use_env = os.getenv("PASSGATE_NO_ENV", "false").lower() in ("true", "1", "t")


class Settings(BaseSettings):
    """
    Manages all application configuration using Pydantic.
    Loads settings from environment variables (or a .env file) so deployments
    can change domains and ceremony policy without code changes.
    """
    # Application settings
    APP_NAME: str = "PassGate"
    SECRET_KEY: SecretStr = SecretStr("dev-secret-key-change-in-production")

    # Database settings
    DEFAULT_DATABASE_URI: str = "sqlite+aiosqlite:///./passgate_dev.db"  # PROVIDE ASYNC URI
    AUTO_CREATE_DATABASE: bool = True  # Automatically create the database tables if they don't exist
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_POOL_RECYCLE: int = 1800
    DATABASE_POOL_PRE_PING: bool = True

    # Session cookie, only carries opaque challenge references and the logged in user id.
    SESSION_COOKIE_NAME: str = "passgate_session"
    SESSION_SAME_SITE: Literal["lax", "strict", "none"] = "lax"
    SESSION_SECURE: bool = True
    SESSION_MAX_AGE_SECONDS: int = 1209600

    # Relying party resolution
    PASSKEY_ALLOWED_HOSTS: List[str] = []  # serving domains, first entry is the fallback RP id
    PASSKEY_RP_NAME: Optional[str] = None  # global display name, humanized domain is used when unset
    PASSKEY_DOMAIN_NAMES: Dict[str, str] = {}  # {"shop.example.com": "Example Shop"}
    PASSKEY_DOMAIN_RP_IDS: Dict[str, str] = {}  # {"shop.example.com": "example.com"}, must be a parent of the key
    PASSKEY_RP_RESOLVER: str = "passgate.core.relying_party.HostRelyingPartyResolver"
    PASSKEY_TENANT_PROVIDER: Optional[str] = None  # dotted path to a TenantProvider, None = single tenant

    # Ceremony policy
    PASSKEY_CHALLENGE_BYTES: int = 32
    PASSKEY_CHALLENGE_TTL_SECONDS: int = 300
    PASSKEY_TIMEOUT_SECONDS: int = 60  # hint sent to the browser, in seconds
    PASSKEY_REQUIRE_USER_VERIFICATION: bool = True
    PASSKEY_REQUIRE_USER_PRESENCE: bool = True
    PASSKEY_RESIDENT_KEY: Literal["required", "preferred", "discouraged"] = "preferred"
    PASSKEY_DISCOVERABLE_LOGIN: bool = True  # empty allowCredentials, the authenticator picks the credential
    PASSKEY_ALLOWED_ORIGINS: List[str] = []  # extra exact origins, e.g. "http://localhost:5173"
    PASSKEY_ATTESTATION_FORMATS: List[str] = ["none", "packed", "fido-u2f", "apple", "android-key", "tpm"]
    PASSKEY_DISABLE_ON_COUNTER_REGRESSION: bool = False
    PASSKEY_REQUIRE_HTTPS: bool = True  # plain http is still accepted for development hosts
    PASSKEY_LOGIN_REDIRECT: str = "/"
    PASSKEY_DEBUG_ENDPOINT: bool = False  # GET /passkeys/debug, never enable in production

    model_config = SettingsConfigDict(env_file=None if dont_use_env else os.getenv("ENV_FILE_NAME", ".env"),
                                      env_file_encoding='utf-8', extra='ignore')

    @field_validator("PASSKEY_ALLOWED_HOSTS", "PASSKEY_ALLOWED_ORIGINS", mode="before")
    @classmethod
    def _split_comma_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("PASSKEY_CHALLENGE_BYTES")
    @classmethod
    def _challenge_entropy(cls, value: int) -> int:
        if value < 32:
            raise ValueError("PASSKEY_CHALLENGE_BYTES must be at least 32.")
        return value


def init_settings(**kwargs: Any) -> "Settings":
    """
    Initializes or re-initializes the global settings singleton. This should
    be called explicitly at the start of your application, especially for
    testing or when using a secrets manager.

    Args:
        **kwargs: Keyword arguments to initialize settings with.
    """
    global _settings_instance, dont_use_env
    if _settings_instance is not None:
        logger.warning("Settings have already been initialized. Re-initializing.")
    dont_use_env = kwargs.pop("dont_use_env", True)
    _settings_instance = Settings(**kwargs)
    return _settings_instance


def get_settings() -> "Settings":
    """
    Retrieves the global settings singleton.

    If settings have not been initialized manually via `init_settings()`, this
    function will auto-initialize them from the environment, unless the
    `PASSGATE_NO_ENV` flag is set.
    """
    global _settings_instance
    if _settings_instance is None:
        if dont_use_env:
            raise RuntimeError(
                "PASSGATE_NO_ENV is set. Settings must be initialized manually "
                "by calling `init_settings()` at application startup."
            )
        logger.debug("Auto-initializing settings on first access.")
        _settings_instance = init_settings(dont_use_env=False)
    return _settings_instance


# Lets other modules do `from passgate.core.config import settings` while the
# real Settings object is only built on first attribute access.
class _SettingsProxy:
    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)


settings = _SettingsProxy()
