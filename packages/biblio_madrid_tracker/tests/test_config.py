"""Tests for settings resolution.

These are unit tests that don't require network access or credentials.
"""

import json
import logging
from pathlib import Path

import pytest

from biblio_madrid_tracker.config import ConfigError, load_settings


@pytest.fixture(autouse=True)
def no_default_config(tmp_path, monkeypatch):
    """Run from an empty directory so a stray appsettings.json is never picked up."""
    monkeypatch.chdir(tmp_path)


def write_config(path: Path, data: dict) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestLoadSettings:
    """Tests for load_settings."""

    def test_credentials_from_environment(self):
        settings = load_settings(environ={"LIBRARY_USERNAME": "card", "LIBRARY_PASSWORD": "pin"})

        assert len(settings.accounts) == 1
        assert settings.accounts[0].username == "card"
        assert settings.accounts[0].password == "pin"
        assert settings.accounts[0].account_key == "books"
        assert settings.storage_location == "data"
        assert settings.publish_dir is None
        assert settings.covers_dir is None

    def test_missing_primary_credentials(self):
        with pytest.raises(ConfigError):
            load_settings(environ={"LIBRARY_USERNAME": "card"})

    def test_missing_secondary_is_skipped(self):
        settings = load_settings(environ={
            "LIBRARY_USERNAME": "card",
            "LIBRARY_PASSWORD": "pin",
            "LIBRARY_SECONDARY_USERNAME": "card2",
        })

        assert [a.account_key for a in settings.accounts] == ["books"]

    def test_secondary_account(self):
        settings = load_settings(environ={
            "LIBRARY_USERNAME": "card",
            "LIBRARY_PASSWORD": "pin",
            "LIBRARY_SECONDARY_USERNAME": "card2",
            "LIBRARY_SECONDARY_PASSWORD": "pin2",
            "LIBRARY_SECONDARY_LABEL": "kids",
        })

        assert [a.account_key for a in settings.accounts] == ["books", "books-kids"]
        assert settings.accounts[1].username == "card2"

    def test_secondary_label_defaults(self):
        settings = load_settings(environ={
            "LIBRARY_USERNAME": "card",
            "LIBRARY_PASSWORD": "pin",
            "LIBRARY_SECONDARY_USERNAME": "card2",
            "LIBRARY_SECONDARY_PASSWORD": "pin2",
        })

        assert settings.accounts[1].account_key == "books-secondary"

    def test_config_file(self, tmp_path):
        config = write_config(tmp_path / "settings.json", {
            "LibraryUsername": "card",
            "LibraryPassword": "pin",
            "StorageLocation": "history",
            "PublishDirectory": "web/data",
            "CoversDirectory": "web/data/covers",
        })

        settings = load_settings(config_path=config, environ={})

        assert settings.accounts[0].username == "card"
        assert settings.storage_location == "history"
        assert settings.publish_dir == Path("web/data")
        assert settings.covers_dir == Path("web/data/covers")

    def test_default_config_file_is_used(self, tmp_path):
        write_config(tmp_path / "appsettings.json", {"LibraryUsername": "card", "LibraryPassword": "pin"})

        settings = load_settings(environ={})

        assert settings.accounts[0].username == "card"

    def test_environment_overrides_file(self, tmp_path):
        config = write_config(tmp_path / "settings.json", {"LibraryUsername": "card", "LibraryPassword": "pin"})

        settings = load_settings(config_path=config, environ={"LIBRARY_PASSWORD": "new-pin"})

        assert settings.accounts[0].password == "new-pin"

    def test_overrides_win(self):
        settings = load_settings(
            environ={"LIBRARY_USERNAME": "card", "LIBRARY_PASSWORD": "pin", "BOOKS_STORAGE_LOCATION": "env"},
            overrides={"LibraryUsername": "cli-card", "StorageLocation": None},
        )

        assert settings.accounts[0].username == "cli-card"
        assert settings.storage_location == "env"

    def test_invalid_config_file(self, tmp_path):
        config = tmp_path / "settings.json"
        config.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_settings(config_path=config, environ={})

    def test_config_file_must_be_object(self, tmp_path):
        config = write_config(tmp_path / "settings.json", ["card", "pin"])

        with pytest.raises(ConfigError):
            load_settings(config_path=config, environ={})

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_settings(config_path=tmp_path / "missing.json", environ={})

    def test_legacy_connection_string_in_file_warns(self, tmp_path, caplog):
        config = write_config(tmp_path / "settings.json", {
            "LibraryUsername": "card",
            "LibraryPassword": "pin",
            "AzureStorageConnectionString": "DefaultEndpointsProtocol=https;AccountName=acct",
        })

        with caplog.at_level(logging.WARNING):
            settings = load_settings(config_path=config, environ={})

        assert settings.storage_location == "data"
        assert "AzureStorageConnectionString" in caplog.text
        assert "StorageLocation" in caplog.text

    def test_legacy_connection_string_in_environment_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            load_settings(environ={
                "LIBRARY_USERNAME": "card",
                "LIBRARY_PASSWORD": "pin",
                "AZURE_STORAGE_CONNECTION_STRING": "DefaultEndpointsProtocol=https;AccountName=acct",
            })

        assert "BOOKS_STORAGE_LOCATION" in caplog.text

    def test_no_warning_without_legacy_setting(self, caplog):
        with caplog.at_level(logging.WARNING):
            load_settings(environ={"LIBRARY_USERNAME": "card", "LIBRARY_PASSWORD": "pin"})

        assert "AzureStorageConnectionString" not in caplog.text
