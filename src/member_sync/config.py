"""Profile store connection configuration.

Reads connection settings from CLI args, environment variables, .env files,
and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > defaults

Environment variables:
    PROFILE_STORE_URL: Profile store API base URL (required)
    PROFILE_STORE_USERNAME: API username (required)
    PROFILE_STORE_PASSWORD: API password (required)
    PROFILE_STORE_TIMEOUT: Read timeout in seconds (optional, default: 60)
    PROFILE_STORE_MAX_RETRIES: Server-error retries (optional, default: 3)
    MEMBER_SYNC_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass
class Config:
    profile_store_url: str
    username: str
    password: str
    timeout: int = 60
    max_retries: int = 3
    per_page: int = 100
    debug: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Raises:
        ValueError: If the URL format is invalid or credentials are empty.
    """
    config.profile_store_url = config.profile_store_url.strip()

    if not config.profile_store_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid profile store URL '{config.profile_store_url}': "
            "must start with http:// or https://"
        )

    parsed = urlparse(config.profile_store_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid profile store URL '{config.profile_store_url}': "
            "URL must include a hostname"
        )

    # Scheme and host are verified, trailing slash can go
    config.profile_store_url = config.profile_store_url.removesuffix("/")

    if not config.username.strip():
        raise ValueError(
            "Profile store username cannot be empty. "
            "Set PROFILE_STORE_USERNAME environment variable."
        )

    if not config.password.strip():
        raise ValueError(
            "Profile store password cannot be empty. "
            "Set PROFILE_STORE_PASSWORD environment variable."
        )


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _int_setting(
    env_key: str, fb: dict, fb_key: str, default: int, low: int, high: int
) -> int:
    raw = os.getenv(env_key)
    if raw is None:
        return int(fb.get(fb_key, default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {env_key} '{raw}': "
            f"must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {env_key} '{raw}': "
            f"must be a number between {low} and {high}"
        )
    return value


def load_config(
    url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override profile store URL.
        username: Override username.
        password: Override password.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Values from the YAML ``downstream`` section.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If URL, username or password is missing after checking
            all sources, or a numeric env var is out of range.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error ---

    store_url = url or os.getenv("PROFILE_STORE_URL") or fb.get("url")
    if not store_url:
        raise ValueError(
            "Profile store URL not found. Set PROFILE_STORE_URL "
            "environment variable, pass --url, or add 'downstream.url' "
            "to config.yml."
        )

    store_username = (
        username or os.getenv("PROFILE_STORE_USERNAME") or fb.get("username")
    )
    if not store_username:
        raise ValueError(
            "Profile store username not found. Set PROFILE_STORE_USERNAME "
            "environment variable, pass --username, or add "
            "'downstream.username' to config.yml."
        )

    store_password = (
        password or os.getenv("PROFILE_STORE_PASSWORD") or fb.get("password")
    )
    if not store_password:
        raise ValueError(
            "Profile store password not found. Set PROFILE_STORE_PASSWORD "
            "environment variable, pass --password, or add "
            "'downstream.password' to config.yml."
        )

    # --- Boolean fields: CLI > env > YAML > default ---

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("MEMBER_SYNC_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    config = Config(
        profile_store_url=store_url.strip(),
        username=store_username.strip(),
        password=store_password.strip(),
        timeout=_int_setting(
            "PROFILE_STORE_TIMEOUT", fb, "timeout", 60, 1, 600
        ),
        max_retries=_int_setting(
            "PROFILE_STORE_MAX_RETRIES", fb, "max_retries", 3, 0, 10
        ),
        per_page=int(fb.get("per_page", 100)),
        debug=final_debug,
    )

    validate_config(config)

    return config
