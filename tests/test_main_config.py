"""
Unit tests for archiver configuration loading and normalization.
"""

import pytest

from archiver.main import load_config, sync_settings


def _write(tmp_path, text):
    path = tmp_path / "settings.toml"
    path.write_text(text)
    return path


VALID = """
[archiver]
session_path = "/var/lib/tg-archiver/archiver.session"
page_size = 50
fetch_limit = 0
max_concurrency = 2

[database]
host = "localhost"
database = "tg_archiver"
"""


class TestLoadConfig:
    def test_valid(self, tmp_path):
        config = load_config(_write(tmp_path, VALID))
        assert config["archiver"]["page_size"] == 50
        assert config["database"]["host"] == "localhost"

    def test_missing_session_path(self, tmp_path):
        path = _write(tmp_path, "[archiver]\n[database]\nhost = 'x'\n")
        with pytest.raises(KeyError, match="archiver.session_path"):
            load_config(path)

    def test_missing_database_section(self, tmp_path):
        path = _write(tmp_path, "[archiver]\nsession_path = 'a'\n")
        with pytest.raises(KeyError, match="database"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")


class TestSyncSettings:
    def test_defaults(self):
        settings = sync_settings({})
        assert settings == {
            "page_size": 100,
            "fetch_limit": None,
            "max_concurrency": 3,
            "page_delay": 0.5,
            "run_timeout": 900.0,
        }

    def test_page_size_clamped(self):
        assert sync_settings({"archiver": {"page_size": 1000}})["page_size"] == 100
        assert sync_settings({"archiver": {"page_size": -4}})["page_size"] == 1

    def test_positive_fetch_limit_kept(self):
        assert sync_settings({"archiver": {"fetch_limit": 500}})["fetch_limit"] == 500

    def test_zero_timeout_disables(self):
        assert sync_settings({"archiver": {"run_timeout_seconds": 0}})["run_timeout"] is None

    def test_invalid_value_falls_back(self):
        settings = sync_settings({"archiver": {"max_concurrency": "many"}})
        assert settings["max_concurrency"] == 3
