"""Tests for configuration classes."""

import pytest

from attachsync.core.config import (
    DEFAULT_CHUNK_SIZE,
    MIB,
    ConfigError,
    RemoteConfig,
    SyncSettings,
)


class TestRemoteConfig:
    """Tests for RemoteConfig."""

    def test_strips_trailing_slash(self) -> None:
        config = RemoteConfig(org_url="https://tfs.example.com/Coll/", project="Demo", pat="x")
        assert config.org_url == "https://tfs.example.com/Coll"

    def test_strips_pasted_project_segment(self) -> None:
        """A project appended to the org URL should be removed."""
        config = RemoteConfig(
            org_url="https://tfs.example.com/Coll/demo/", project="Demo", pat="x"
        )
        assert config.org_url == "https://tfs.example.com/Coll"
        assert config.project_url == "https://tfs.example.com/Coll/Demo"

    def test_auth_uses_empty_user(self) -> None:
        config = RemoteConfig(org_url="https://t", project="P", pat="token")
        assert config.auth == ("", "token")

    def test_from_env(self) -> None:
        env = {
            "ATTACHSYNC_ORG_URL": "https://tracker.test/Coll",
            "ATTACHSYNC_PROJECT": "Demo",
            "ATTACHSYNC_PAT": "pat",
            "ATTACHSYNC_VERIFY_SSL": "false",
            "ATTACHSYNC_REQUEST_TIMEOUT": "12.5",
        }
        config = RemoteConfig.from_env(env)
        assert config.project == "Demo"
        assert config.verify_ssl is False
        assert config.timeout == 12.5
        assert config.api_version == "5.1"

    def test_from_env_missing_values(self) -> None:
        """Missing credentials should be reported by name."""
        with pytest.raises(ConfigError, match="project, pat"):
            RemoteConfig.from_env({"ATTACHSYNC_ORG_URL": "https://t"})


class TestSyncSettings:
    """Tests for SyncSettings."""

    def test_defaults(self) -> None:
        settings = SyncSettings()
        assert settings.chunk_size == DEFAULT_CHUNK_SIZE == 5 * MIB
        assert settings.chunk_threshold == 5 * MIB
        assert settings.detect_remote_deletions is True
        assert settings.webhook_secret == ""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chunk_size": 0},
            {"chunk_threshold": -1},
            {"max_file_size": 0},
            {"max_retries": -1},
            {"download_concurrency": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ConfigError):
            SyncSettings(**kwargs)

    def test_from_env(self) -> None:
        settings = SyncSettings.from_env(
            {
                "ATTACHSYNC_CHUNK_SIZE": "2048",
                "ATTACHSYNC_MAX_RETRIES": "5",
                "ATTACHSYNC_WEBHOOK_SECRET": "s3cret",
                "ATTACHSYNC_DETECT_REMOTE_DELETIONS": "no",
            }
        )
        assert settings.chunk_size == 2048
        assert settings.max_retries == 5
        assert settings.webhook_secret == "s3cret"
        assert settings.detect_remote_deletions is False
        assert settings.chunk_threshold == 5 * MIB

    def test_from_env_empty_uses_defaults(self) -> None:
        assert SyncSettings.from_env({}) == SyncSettings()
