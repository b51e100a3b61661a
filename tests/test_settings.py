"""
Tests for configuration loading.
"""

import json

import pytest

from settings import Settings, load_settings, parse_bool


class TestDefaults:
    """Tests for default settings."""

    def test_defaults(self):
        """Test the built-in defaults with an empty environment."""
        settings = load_settings(environ={})
        assert settings == Settings()
        assert settings.port == 8123
        assert settings.scheme == "epub"
        assert settings.mount_prefix == "/epub"
        assert settings.base_url == "http://127.0.0.1:8123"


class TestEnvironment:
    """Tests for EPUBSHELF_* environment overrides."""

    def test_overrides(self):
        """Test that each variable maps onto its field."""
        settings = load_settings(environ={
            "EPUBSHELF_BOOKS_DIR": "/srv/books",
            "EPUBSHELF_HOST": "0.0.0.0",
            "EPUBSHELF_PORT": "9000",
            "EPUBSHELF_SCHEME": "Book",
            "EPUBSHELF_MOUNT_PREFIX": "content/",
            "EPUBSHELF_OPEN_EXTERNAL_LINKS": "off",
            "EPUBSHELF_OPEN_BROWSER": "No",
            "EPUBSHELF_LOG_LEVEL": "debug",
            "EPUBSHELF_LOG_FILE": "/tmp/shelf.log",
        })
        assert settings == Settings(
            books_dir="/srv/books",
            host="0.0.0.0",
            port=9000,
            scheme="book",
            mount_prefix="/content",
            open_external_links=False,
            open_browser=False,
            log_level="DEBUG",
            log_file="/tmp/shelf.log",
        )

    def test_invalid_port_falls_back(self, caplog):
        """Test that a non-numeric port keeps the default with a warning."""
        settings = load_settings(environ={"EPUBSHELF_PORT": "eighty"})
        assert settings.port == 8123
        assert "eighty" in caplog.text

    def test_invalid_scheme_falls_back(self):
        """Test that an unusable scheme keeps the default."""
        assert load_settings(environ={"EPUBSHELF_SCHEME": "9bad scheme"}).scheme == "epub"

    def test_empty_mount_prefix_falls_back(self):
        """Test that '/' cannot be used as the mount prefix."""
        assert load_settings(environ={"EPUBSHELF_MOUNT_PREFIX": "/"}).mount_prefix == "/epub"

    @pytest.mark.parametrize("value,expected", [
        ("1", True), ("true", True), ("YES", True), (" on ", True),
        ("0", False), ("false", False), ("no", False), ("OFF", False),
        ("maybe", True),
    ])
    def test_parse_bool(self, value, expected):
        """Test accepted boolean spellings; unknown values keep the default."""
        assert parse_bool(value, True) is expected


class TestConfigFile:
    """Tests for the optional JSON config file."""

    def test_file_then_environment(self, tmp_path):
        """Test that environment variables win over the file."""
        config = tmp_path / "shelf.json"
        config.write_text(json.dumps({"port": 9100, "books_dir": "/from/file", "open_browser": False}))
        settings = load_settings(str(config), environ={"EPUBSHELF_BOOKS_DIR": "/from/env"})
        assert settings.port == 9100
        assert settings.books_dir == "/from/env"
        assert settings.open_browser is False

    def test_config_path_from_environment(self, tmp_path):
        """Test EPUBSHELF_CONFIG."""
        config = tmp_path / "shelf.json"
        config.write_text(json.dumps({"host": "localhost"}))
        settings = load_settings(environ={"EPUBSHELF_CONFIG": str(config)})
        assert settings.host == "localhost"

    def test_unknown_keys_ignored(self, tmp_path):
        """Test that keys that are not settings are ignored."""
        config = tmp_path / "shelf.json"
        config.write_text(json.dumps({"theme": "dark", "port": "9200"}))
        assert load_settings(str(config), environ={}).port == 9200

    @pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
    def test_invalid_file_ignored(self, tmp_path, content, caplog):
        """Test that unreadable config files are logged and ignored."""
        config = tmp_path / "shelf.json"
        config.write_text(content)
        assert load_settings(str(config), environ={}) == Settings()
        assert "Ignoring config file" in caplog.text

    def test_missing_file_ignored(self, tmp_path):
        """Test that a missing config file is not fatal."""
        assert load_settings(str(tmp_path / "nope.json"), environ={}) == Settings()
