"""Tests for member_sync.config -- connection settings and validation.

NOT to be confused with test_config_loader.py (hierarchical YAML config)
or test_config_schema.py (Pydantic models). This tests the profile store
connection path: validate_config() and load_config().
"""

import pytest

from member_sync.config import Config, load_config, validate_config

ENV_KEYS = (
    "PROFILE_STORE_URL",
    "PROFILE_STORE_USERNAME",
    "PROFILE_STORE_PASSWORD",
    "PROFILE_STORE_TIMEOUT",
    "PROFILE_STORE_MAX_RETRIES",
    "MEMBER_SYNC_DEBUG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store_env(monkeypatch):
    monkeypatch.setenv("PROFILE_STORE_URL", "https://profiles.example.org")
    monkeypatch.setenv("PROFILE_STORE_USERNAME", "user")
    monkeypatch.setenv("PROFILE_STORE_PASSWORD", "pass")


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    """Tests for validate_config() -- URL format and credential checks."""

    def test_valid_config(self):
        config = Config(
            profile_store_url="https://profiles.example.org/api",
            username="admin",
            password="secret",
        )
        validate_config(config)  # should not raise

    def test_http_url_valid(self):
        config = Config(
            profile_store_url="http://localhost:8080",
            username="admin",
            password="secret",
        )
        validate_config(config)

    def test_invalid_url_no_scheme(self):
        config = Config(
            profile_store_url="profiles.example.org",
            username="admin",
            password="secret",
        )
        with pytest.raises(ValueError, match="must start with http"):
            validate_config(config)

    def test_invalid_url_ftp_scheme(self):
        config = Config(
            profile_store_url="ftp://profiles.example.org",
            username="admin",
            password="secret",
        )
        with pytest.raises(ValueError, match="must start with http"):
            validate_config(config)

    def test_empty_host(self):
        config = Config(
            profile_store_url="https://",
            username="admin",
            password="secret",
        )
        with pytest.raises(ValueError, match="must include a hostname"):
            validate_config(config)

    def test_empty_username(self):
        config = Config(
            profile_store_url="https://profiles.example.org",
            username="",
            password="secret",
        )
        with pytest.raises(ValueError, match="username cannot be empty"):
            validate_config(config)

    def test_whitespace_only_password(self):
        config = Config(
            profile_store_url="https://profiles.example.org",
            username="admin",
            password="   ",
        )
        with pytest.raises(ValueError, match="password cannot be empty"):
            validate_config(config)

    def test_trailing_slash_stripped(self):
        config = Config(
            profile_store_url="https://profiles.example.org/api/",
            username="admin",
            password="secret",
        )
        validate_config(config)
        assert config.profile_store_url == "https://profiles.example.org/api"

    def test_whitespace_url_stripped_before_scheme_check(self):
        config = Config(
            profile_store_url="  https://profiles.example.org  ",
            username="admin",
            password="secret",
        )
        validate_config(config)
        assert config.profile_store_url == "https://profiles.example.org"


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    """Tests for load_config() -- precedence across sources."""

    def test_load_from_env_vars(self, store_env):
        config = load_config()
        assert config.profile_store_url == "https://profiles.example.org"
        assert config.username == "user"
        assert config.password == "pass"
        assert config.timeout == 60
        assert config.max_retries == 3
        assert config.debug is False

    def test_cli_args_override_env(self, store_env):
        config = load_config(
            url="https://cli.example.org",
            username="cli-user",
            password="cli-pass",
        )
        assert config.profile_store_url == "https://cli.example.org"
        assert config.username == "cli-user"
        assert config.password == "cli-pass"

    def test_missing_url_raises(self):
        with pytest.raises(ValueError, match="URL not found"):
            load_config()

    def test_missing_username_raises(self, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_URL", "https://profiles.example.org")
        with pytest.raises(ValueError, match="username not found"):
            load_config()

    def test_missing_password_raises(self, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_URL", "https://profiles.example.org")
        monkeypatch.setenv("PROFILE_STORE_USERNAME", "user")
        with pytest.raises(ValueError, match="password not found"):
            load_config()

    # --- YAML fallbacks ---

    def test_yaml_fallbacks_fill_gaps(self):
        config = load_config(
            yaml_fallbacks={
                "url": "https://yaml.example.org",
                "username": "yaml-user",
                "password": "yaml-pass",
                "timeout": 30,
                "max_retries": 5,
                "per_page": 50,
            }
        )
        assert config.profile_store_url == "https://yaml.example.org"
        assert config.username == "yaml-user"
        assert config.timeout == 30
        assert config.max_retries == 5
        assert config.per_page == 50

    def test_env_beats_yaml(self, store_env, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_TIMEOUT", "90")
        config = load_config(
            yaml_fallbacks={
                "url": "https://yaml.example.org",
                "timeout": 30,
            }
        )
        assert config.profile_store_url == "https://profiles.example.org"
        assert config.timeout == 90

    # --- Debug flag ---

    def test_debug_from_env(self, store_env, monkeypatch):
        monkeypatch.setenv("MEMBER_SYNC_DEBUG", "true")
        assert load_config().debug is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off"])
    def test_debug_falsy_values(self, store_env, monkeypatch, value):
        monkeypatch.setenv("MEMBER_SYNC_DEBUG", value)
        assert load_config(yaml_fallbacks={"debug": True}).debug is False

    def test_debug_cli_flag_wins(self, store_env, monkeypatch):
        monkeypatch.setenv("MEMBER_SYNC_DEBUG", "false")
        assert load_config(debug=True).debug is True

    # --- Numeric env var validation (edge cases) ---

    def test_timeout_non_numeric(self, store_env, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_TIMEOUT", "abc")
        with pytest.raises(
            ValueError, match="Invalid PROFILE_STORE_TIMEOUT 'abc'"
        ):
            load_config()

    def test_timeout_zero(self, store_env, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_TIMEOUT", "0")
        with pytest.raises(
            ValueError, match="must be a number between 1 and 600"
        ):
            load_config()

    def test_max_retries_too_high(self, store_env, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_MAX_RETRIES", "11")
        with pytest.raises(
            ValueError, match="must be a number between 0 and 10"
        ):
            load_config()

    def test_max_retries_zero_valid(self, store_env, monkeypatch):
        monkeypatch.setenv("PROFILE_STORE_MAX_RETRIES", "0")
        assert load_config().max_retries == 0

    # --- Whitespace stripping in load_config ---

    def test_url_whitespace_and_slash_stripped(self, monkeypatch):
        monkeypatch.setenv(
            "PROFILE_STORE_URL", "  https://profiles.example.org/  "
        )
        monkeypatch.setenv("PROFILE_STORE_USERNAME", "  admin  ")
        monkeypatch.setenv("PROFILE_STORE_PASSWORD", "  secret  ")

        config = load_config()
        assert config.profile_store_url == "https://profiles.example.org"
        assert config.username == "admin"
        assert config.password == "secret"
