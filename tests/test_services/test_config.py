"""Tests for application configuration."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from backend.config import Settings


class TestSettings:
    def test_default_settings(self) -> None:
        s = Settings(_env_file=None)
        assert s.debug is False
        assert s.port == 8080
        assert s.mode == "subdomain"
        assert s.enable_versioning is True
        assert s.web_root == Path("./websites")

    def test_custom_settings(self, tmp_path: Path) -> None:
        s = Settings(
            _env_file=None,
            debug=True,
            web_root=tmp_path / "sites",
            mode="path",
            single_domain="sites.example.org",
        )
        assert s.debug is True
        assert s.web_root == tmp_path / "sites"
        assert s.mode == "path"

    def test_rejects_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            Settings(_env_file=None, mode="vhost")

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BASE_DOMAIN", "sites.test")
        monkeypatch.setenv("ENABLE_VERSIONING", "false")
        s = Settings(_env_file=None)
        assert s.base_domain == "sites.test"
        assert s.enable_versioning is False

    def test_settings_from_fixture(self, test_settings: Settings) -> None:
        assert test_settings.debug is True
        assert test_settings.web_root.exists()


class TestRuntimeSecurity:
    def test_debug_skips_checks(self) -> None:
        Settings(_env_file=None, debug=True).validate_runtime_security()

    def test_default_admin_password_rejected(self) -> None:
        with pytest.raises(ValueError, match="ADMIN_PASSWORD"):
            Settings(_env_file=None).validate_runtime_security()

    def test_short_api_key_rejected(self) -> None:
        s = Settings(_env_file=None, admin_password="a-strong-password", api_key="short")
        with pytest.raises(ValueError, match="API_KEY"):
            s.validate_runtime_security()

    def test_strong_production_settings_pass(self) -> None:
        s = Settings(_env_file=None, admin_password="a-strong-password", api_key="k" * 40)
        s.validate_runtime_security()


class TestCliEntry:
    def test_cli_entry_uses_app_settings(self) -> None:
        """cli_entry() should use the global app's settings, not create a new Settings()."""
        from backend.main import app, cli_entry

        original_settings = getattr(app.state, "settings", None)
        app.state.settings = Settings(_env_file=None, host="127.0.0.1", port=9999, debug=True)

        try:
            with patch("uvicorn.run") as mock_run:
                cli_entry()

            mock_run.assert_called_once_with(
                "backend.main:app",
                host="127.0.0.1",
                port=9999,
                reload=True,
            )
        finally:
            app.state.settings = original_settings
