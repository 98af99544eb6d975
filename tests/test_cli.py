"""Tests for the tenantgate CLI."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from tenantgate.cli import main
from tenantgate.core.config import clear_config


@pytest.fixture(autouse=True)
def _fresh_config():
    clear_config()
    yield
    clear_config()


@pytest.fixture
def storage(tmp_path):
    return str(tmp_path / "domains.json")


def _invoke(*args: str):
    return CliRunner().invoke(main, list(args))


class TestCLIBasics:
    def test_help(self):
        result = _invoke("--help")

        assert result.exit_code == 0
        assert "tenant domain management" in result.output
        assert "domain" in result.output

    def test_domain_help_lists_commands(self):
        result = _invoke("domain", "--help")

        assert result.exit_code == 0
        for command in ("add", "verify", "list", "status", "remove", "renew", "health"):
            assert command in result.output


class TestConfigCommand:
    """Tests for config show."""

    def test_show_json(self):
        result = _invoke("config", "show", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["domains"]["base_domain"] == "tenantgate.app"

    def test_show_single_section(self):
        result = _invoke("config", "show", "--json", "--section", "health")

        assert result.exit_code == 0
        assert set(json.loads(result.output)) == {"health"}

    def test_unknown_section(self):
        result = _invoke("config", "show", "--section", "billing")

        assert result.exit_code == 1
        assert "Unknown section" in result.output

    def test_config_file_is_applied(self, tmp_path, monkeypatch):
        path = tmp_path / "tenantgate.yaml"
        path.write_text("domains:\n  base_domain: sites.example.net\n")
        monkeypatch.setenv("TENANTGATE_BASE_DOMAIN", "tenantgate.app")

        result = _invoke("--config", str(path), "config", "show", "--json", "-s", "domains")

        assert result.exit_code == 0
        assert json.loads(result.output)["domains"]["base_domain"] == "sites.example.net"


class TestDomainCommands:
    """Tests for the domain command group against a file store."""

    def test_add_custom_domain_prints_records(self, storage):
        result = _invoke(
            "domain", "add", "shop.example.com", "--tenant", "t1", "--plan", "premium",
            "--storage", storage,
        )

        assert result.exit_code == 0
        assert "Domain registered" in result.output
        assert "CNAME" in result.output
        assert "edge.tenantgate.app" in result.output

    def test_add_without_quota_fails(self, storage):
        result = _invoke("domain", "add", "shop.example.com", "--tenant", "t1", "--storage", storage)

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_add_rejects_bad_name(self, storage):
        result = _invoke(
            "domain", "add", "https://shop", "--tenant", "t1", "--plan", "premium",
            "--storage", storage,
        )

        assert result.exit_code == 1

    def test_list_json(self, storage):
        _invoke("domain", "add", "shop.example.com", "-t", "t1", "--plan", "premium", "--storage", storage)
        _invoke("domain", "add", "acme", "-t", "t2", "--subdomain", "--storage", storage)

        result = _invoke("domain", "list", "--json", "--storage", storage)
        tenant_only = _invoke("domain", "list", "--json", "-t", "t2", "--storage", storage)

        assert result.exit_code == 0
        assert {d["domain"] for d in json.loads(result.output)} == {
            "shop.example.com",
            "acme.tenantgate.app",
        }
        assert [d["tenant_id"] for d in json.loads(tenant_only.output)] == ["t2"]

    def test_list_empty(self, storage):
        result = _invoke("domain", "list", "--storage", storage)

        assert result.exit_code == 0
        assert "No domains registered" in result.output

    def test_status(self, storage):
        _invoke("domain", "add", "shop.example.com", "-t", "t1", "--plan", "premium", "--storage", storage)

        result = _invoke("domain", "status", "shop.example.com", "--storage", storage)

        assert result.exit_code == 0
        assert "pending_verification" in result.output
        assert "0 attempts" in result.output

    def test_status_unknown_domain(self, storage):
        result = _invoke("domain", "status", "nope.example.com", "--storage", storage)

        assert result.exit_code == 1
        assert "Domain not found" in result.output

    def test_resolve_subdomain(self, storage):
        _invoke("domain", "add", "acme", "-t", "t2", "--subdomain", "--storage", storage)

        found = _invoke("resolve", "acme.tenantgate.app", "--storage", storage)
        missing = _invoke("resolve", "other.tenantgate.app", "--storage", storage)

        assert found.exit_code == 0
        assert "t2" in found.output
        assert missing.exit_code == 1

    def test_pending_custom_domain_does_not_resolve(self, storage):
        _invoke("domain", "add", "shop.example.com", "-t", "t1", "--plan", "premium", "--storage", storage)

        result = _invoke("resolve", "shop.example.com", "--storage", storage)

        assert result.exit_code == 1

    def test_remove(self, storage):
        _invoke("domain", "add", "acme", "-t", "t2", "--subdomain", "--storage", storage)

        removed = _invoke("domain", "remove", "acme.tenantgate.app", "-y", "--storage", storage)
        listing = _invoke("domain", "list", "--json", "--storage", storage)

        assert removed.exit_code == 0
        assert "Removed" in removed.output
        assert json.loads(listing.output) == []

    def test_remove_asks_for_confirmation(self, storage):
        _invoke("domain", "add", "acme", "-t", "t2", "--subdomain", "--storage", storage)

        result = CliRunner().invoke(
            main, ["domain", "remove", "acme.tenantgate.app", "--storage", storage], input="n\n"
        )

        assert result.exit_code == 1
        listing = _invoke("domain", "list", "--json", "--storage", storage)
        assert len(json.loads(listing.output)) == 1

    def test_renew_pending_domain_fails(self, storage):
        _invoke("domain", "add", "shop.example.com", "-t", "t1", "--plan", "premium", "--storage", storage)

        result = _invoke("domain", "renew", "shop.example.com", "--storage", storage)

        assert result.exit_code == 1
        assert "Error" in result.output


class TestSweepCommand:
    def test_sweep_with_nothing_due(self, storage):
        result = _invoke("sweep", "--storage", storage)

        assert result.exit_code == 0
        assert "Renewed" in result.output
