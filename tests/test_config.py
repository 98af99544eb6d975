"""Tests for configuration loading from environment variables and files."""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tenantgate.core.config import (
    CertificateSettings,
    DomainSettings,
    HealthSettings,
    ResolverSettings,
    ServerSettings,
    TenantgateConfig,
    apply_file_config,
    clear_config,
    get_config,
    load_config_from_file,
)


@pytest.fixture(autouse=True)
def _fresh_config():
    clear_config()
    yield
    clear_config()


class TestDomainSettings:
    """Test DomainSettings."""

    def test_default_values(self) -> None:
        config = DomainSettings()
        assert config.base_domain == "tenantgate.app"
        assert config.cname_target == "edge.tenantgate.app"
        assert config.verification_label == "_tenantgate-challenge"
        assert config.recheck_cap_hours == 24
        assert config.plan_limits == {"foundation": 0, "growth": 0, "premium": 3, "enterprise": 10}

    def test_env_override_is_normalized(self) -> None:
        """TENANTGATE_BASE_DOMAIN is lower-cased and loses its trailing dot."""
        with patch.dict(os.environ, {"TENANTGATE_BASE_DOMAIN": "Sites.Example.NET."}):
            assert DomainSettings().base_domain == "sites.example.net"

    def test_plan_limits_from_json(self) -> None:
        with patch.dict(os.environ, {"TENANTGATE_PLAN_LIMITS": '{"premium": 5, "enterprise": 50}'}):
            assert DomainSettings().plan_limits == {"premium": 5, "enterprise": 50}

    def test_tenant_plans(self) -> None:
        assert DomainSettings().tenant_plans == {}
        assert DomainSettings().default_plan == "foundation"
        with patch.dict(os.environ, {"TENANTGATE_TENANT_PLANS": '{"t1": "premium"}'}):
            assert DomainSettings().tenant_plans == {"t1": "premium"}


class TestCertificateSettings:
    def test_default_values(self) -> None:
        config = CertificateSettings()
        assert config.validity_days == 90
        assert config.freshness_hours == 24
        assert config.renewal_horizon_days == 30
        assert config.retention_days == 90

    def test_env_override(self) -> None:
        with patch.dict(os.environ, {"TENANTGATE_RENEWAL_HORIZON_DAYS": "21"}):
            assert CertificateSettings().renewal_horizon_days == 21

    def test_invalid_value_rejected(self) -> None:
        with patch.dict(os.environ, {"TENANTGATE_RENEWAL_HORIZON_DAYS": "0"}):
            with pytest.raises(ValidationError):
                CertificateSettings()


class TestOtherSections:
    def test_health_defaults(self) -> None:
        config = HealthSettings()
        assert config.failure_threshold == 3
        assert config.expiry_warning_days == 30

    def test_resolver_override(self) -> None:
        with patch.dict(os.environ, {"TENANTGATE_LOOKUP_TIMEOUT": "0.5"}):
            assert ResolverSettings().lookup_timeout == 0.5

    def test_server_flags(self) -> None:
        with patch.dict(os.environ, {"TENANTGATE_METRICS_ENABLED": "false", "TENANTGATE_LOG_JSON": "true"}):
            config = ServerSettings()
            assert config.metrics_enabled is False
            assert config.log_json is True


class TestTenantgateConfig:
    def test_to_display_dict(self) -> None:
        display = TenantgateConfig().to_display_dict()

        assert set(display) == {"domains", "certificates", "health", "resolver", "server"}
        assert display["server"]["bind"] == "0.0.0.0:8080"

    def test_get_config_caches_instance(self) -> None:
        assert get_config() is get_config()

    def test_clear_config_picks_up_env(self) -> None:
        before = get_config()
        with patch.dict(os.environ, {"TENANTGATE_VALIDITY_DAYS": "30"}):
            clear_config()
            after = get_config()
            assert after is not before
            assert after.certificates.validity_days == 30


class TestConfigFiles:
    """Tests for YAML and TOML config files."""

    def test_load_yaml(self, tmp_path) -> None:
        path = tmp_path / "tenantgate.yaml"
        path.write_text("domains:\n  base_domain: sites.example.net\n")

        assert load_config_from_file(path) == {"domains": {"base_domain": "sites.example.net"}}

    def test_load_toml(self, tmp_path) -> None:
        path = tmp_path / "tenantgate.toml"
        path.write_text("[certificates]\nvalidity_days = 30\n")

        assert load_config_from_file(path) == {"certificates": {"validity_days": 30}}

    def test_empty_yaml(self, tmp_path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config_from_file(path) == {}

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config_from_file(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path) -> None:
        path = tmp_path / "config.ini"
        path.write_text("[domains]\n")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config_from_file(path)

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("domains: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_from_file(path)

    def test_apply_file_config_flattens_sections(self, tmp_path) -> None:
        path = tmp_path / "tenantgate.yaml"
        path.write_text(
            "domains:\n"
            "  base_domain: sites.example.net\n"
            "  plan_limits:\n"
            "    premium: 5\n"
            "certificates:\n"
            "  validity_days: 30\n"
            "server:\n"
            "  log_json: true\n"
        )

        env = apply_file_config(path)

        assert env["TENANTGATE_BASE_DOMAIN"] == "sites.example.net"
        assert json.loads(env["TENANTGATE_PLAN_LIMITS"]) == {"premium": 5}
        assert env["TENANTGATE_VALIDITY_DAYS"] == "30"
        assert env["TENANTGATE_LOG_JSON"] == "true"

    def test_file_values_reach_settings(self, tmp_path) -> None:
        path = tmp_path / "tenantgate.toml"
        path.write_text('[health]\nfailure_threshold = 5\n')

        with patch.dict(os.environ, apply_file_config(path)):
            assert get_config().health.failure_threshold == 5
