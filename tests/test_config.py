"""
Configuration Tests
-------------------
Tests cover:
- Defaults
- YAML loading
- Environment overrides
- Secret and audit key resolution
"""

from pathlib import Path
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent))

from infra.config import Settings, load_audit_key, load_secrets, load_settings


class TestDefaults:

    def test_limits(self):
        settings = load_settings(environ={})

        assert settings.execute_rate_limit.max_requests == 10
        assert settings.confirm_rate_limit.max_requests == 5
        assert settings.confirm_rate_limit.window_seconds == 10.0
        assert settings.proposal_ttl_seconds == 300.0
        assert settings.proposal_max_pending == 1000
        assert settings.proposal_sweep_interval_seconds == 60.0
        assert settings.server.trust_user_header is False
        assert settings.server.require_auth is False

    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        settings = load_settings(tmp_path / "absent.yaml", environ={})

        assert settings.executor.default_timeout_seconds == 30.0
        assert "Config file not found" in caplog.text

    def test_example_config_loads(self, project_root):
        settings = load_settings(project_root / "config.example.yaml", environ={})

        assert settings.secrets.env_vars == {"smtp_password": "SMTP_PASSWORD"}
        assert settings.server.cors_origins == ["http://localhost:3000"]


class TestYaml:

    def test_values_from_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "execute_rate_limit:\n"
            "  max_requests: 20\n"
            "executor:\n"
            "  max_workers: 2\n"
        )

        settings = load_settings(path, environ={})

        assert settings.execute_rate_limit.max_requests == 20
        assert settings.execute_rate_limit.window_seconds == 10.0
        assert settings.executor.max_workers == 2

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_settings(path, environ={})

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("confirm_rate_limit:\n  max_requests: 0\n")

        with pytest.raises(ValidationError):
            load_settings(path, environ={})


class TestEnvOverrides:

    def test_section_override(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("confirm_rate_limit:\n  max_requests: 5\n")

        settings = load_settings(path, environ={"TOOLGATE_CONFIRM_RATE_LIMIT_MAX_REQUESTS": "3"})

        assert settings.confirm_rate_limit.max_requests == 3

    def test_top_level_override(self):
        settings = load_settings(environ={"TOOLGATE_PROPOSAL_TTL_SECONDS": "45"})

        assert settings.proposal_ttl_seconds == 45.0

    def test_json_list_override(self):
        settings = load_settings(environ={"TOOLGATE_SERVER_CORS_ORIGINS": '["https://a.example"]'})

        assert settings.server.cors_origins == ["https://a.example"]

    def test_auth_overrides(self):
        settings = load_settings(environ={
            "TOOLGATE_SERVER_TRUST_USER_HEADER": "true",
            "TOOLGATE_PROPOSAL_MAX_PENDING": "50",
        })

        assert settings.server.trust_user_header is True
        assert settings.proposal_max_pending == 50

    def test_bool_override(self):
        settings = load_settings(environ={"TOOLGATE_SERVER_DEMO_TOOLS": "false"})

        assert settings.server.demo_tools is False


class TestSecrets:

    def test_load_secrets(self):
        settings = Settings.model_validate({"secrets": {"env_vars": {"smtp_password": "SMTP_PASSWORD"}}})

        assert load_secrets(settings, {"SMTP_PASSWORD": "pw"}) == {"smtp_password": "pw"}

    def test_missing_secret_skipped(self, caplog):
        settings = Settings.model_validate({"secrets": {"env_vars": {"smtp_password": "SMTP_PASSWORD"}}})

        assert load_secrets(settings, {}) == {}
        assert "SMTP_PASSWORD" in caplog.text

    def test_audit_key(self):
        settings = Settings()

        assert load_audit_key(settings, {"TOOLGATE_AUDIT_KEY": "k"}) == b"k"
        assert load_audit_key(settings, {}) is None
