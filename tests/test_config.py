"""Unit tests for chargebee_sync.config module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from chargebee_sync.config import Config, load_config


class TestConfig:
    """Tests for Config dataclass."""

    def test_basic_init(self):
        """Test basic Config initialization."""
        config = Config(api_key="test_key", portal_url="https://acme.chargebee.com")

        assert config.api_key == "test_key"
        assert config.chunk_size == 50
        assert config.page_size == 100
        assert config.max_retries == 4
        assert config.backoff_base == 5.0
        assert config.single_fetch_retries == 3
        assert config.single_fetch_delay == 2.0
        assert config.member_role == "member"
        assert config.log_level == "INFO"
        assert config.output_dir == Path("output")

    def test_base_url_keeps_scheme_and_host(self):
        """Test that paths on the portal URL are dropped."""
        config = Config(api_key="key", portal_url="https://acme.chargebee.com/portal/v2/")
        assert config.base_url == "https://acme.chargebee.com"

    def test_subscriptions_endpoint(self):
        """Test subscriptions_endpoint property generates correct URL."""
        config = Config(api_key="key", portal_url="https://acme.chargebee.com/")
        assert config.subscriptions_endpoint == "https://acme.chargebee.com/api/v2/subscriptions"

    def test_base_url_without_scheme(self):
        """Test that an unparseable URL is used as-is."""
        config = Config(api_key="key", portal_url="acme.chargebee.com/")
        assert config.base_url == "acme.chargebee.com"

    def test_output_paths(self):
        """Test log, progress and member database paths."""
        config = Config(api_key="key", portal_url="https://x", output_dir=Path("/var/sync"))
        assert config.log_file == Path("/var/sync/chargebee_sync.log")
        assert config.progress_db == Path("/var/sync/sync_progress.db")
        assert config.member_db == Path("/var/sync/members.db")

    def test_explicit_member_db(self):
        config = Config(api_key="key", portal_url="https://x", db_path=Path("/data/site.db"))
        assert config.member_db == Path("/data/site.db")


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_config_from_env(self, mock_env_vars):
        """Test loading config from environment variables."""
        config = load_config()

        assert config.api_key == "test_key_abc"
        assert config.base_url == "https://acme.chargebee.com"
        assert config.chunk_size == 25
        assert config.page_size == 75
        assert config.max_retries == 6
        assert config.backoff_base == 1.5
        assert config.member_role == "subscriber"
        assert config.log_level == "WARNING"
        assert config.output_dir == Path("/tmp/chargebee_output")

    def test_load_config_page_size_capped(self):
        """Test that page_size is capped at 100."""
        env_vars = {
            "CHARGEBEE_API_KEY": "key",
            "CHARGEBEE_PORTAL_URL": "https://acme.chargebee.com",
            "CHARGEBEE_PAGE_SIZE": "500",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            config = load_config()
            assert config.page_size == 100

    def test_load_config_retries_at_least_one(self):
        """Test that retry counts below one are raised to a single attempt."""
        env_vars = {
            "CHARGEBEE_API_KEY": "key",
            "CHARGEBEE_PORTAL_URL": "https://acme.chargebee.com",
            "CHARGEBEE_MAX_RETRIES": "0",
            "CHARGEBEE_SINGLE_FETCH_RETRIES": "-2",
        }
        with patch("chargebee_sync.config.load_dotenv"):
            with patch.dict(os.environ, env_vars, clear=True):
                config = load_config()

                assert config.max_retries == 1
                assert config.single_fetch_retries == 1

    def test_load_config_empty_member_role(self):
        """Test that an empty member role disables role handling."""
        env_vars = {
            "CHARGEBEE_API_KEY": "key",
            "CHARGEBEE_PORTAL_URL": "https://acme.chargebee.com",
            "CHARGEBEE_MEMBER_ROLE": "",
        }
        with patch("chargebee_sync.config.load_dotenv"):
            with patch.dict(os.environ, env_vars, clear=True):
                assert load_config().member_role == ""

    def test_load_config_missing_api_key(self):
        """Test that missing API key causes exit."""
        with patch("chargebee_sync.config.load_dotenv"):
            with patch.dict(os.environ, {"CHARGEBEE_PORTAL_URL": "https://x"}, clear=True):
                with pytest.raises(SystemExit) as exc_info:
                    load_config()
                assert exc_info.value.code == 1

    def test_load_config_missing_portal_url(self):
        """Test that missing portal URL causes exit."""
        with patch("chargebee_sync.config.load_dotenv"):
            with patch.dict(os.environ, {"CHARGEBEE_API_KEY": "key"}, clear=True):
                with pytest.raises(SystemExit) as exc_info:
                    load_config()
                assert exc_info.value.code == 1

    def test_load_config_defaults(self):
        """Test that defaults are used when optional vars not set."""
        env_vars = {
            "CHARGEBEE_API_KEY": "key",
            "CHARGEBEE_PORTAL_URL": "https://acme.chargebee.com",
        }
        with patch("chargebee_sync.config.load_dotenv"):
            with patch.dict(os.environ, env_vars, clear=True):
                config = load_config()

                assert config.chunk_size == 50
                assert config.page_size == 100
                assert config.max_retries == 4
                assert config.backoff_base == 5.0
                assert config.member_role == "member"
                assert config.log_level == "INFO"
                assert config.output_dir == Path("output")
                assert config.db_path is None
