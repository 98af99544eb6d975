"""Tests for DNS verification with a mocked resolver."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiodns
import httpx
import pytest

from tenantgate.domains.models import DnsEvaluationStatus, VerificationMethod
from tenantgate.domains.verification import (
    TOKEN_PREFIX,
    VERIFICATION_FILE_PATH,
    DNSVerifier,
    tokens_match,
)

TOKEN = "tenantgate-verify=abc123"


def _resolver(answers: dict[tuple[str, str], list]):
    """Mock aiodns resolver answering from ``answers`` and failing otherwise."""

    async def _query(name, record_type):
        if (name, record_type) in answers:
            return answers[(name, record_type)]
        raise aiodns.error.DNSError(4, "Domain name not found")

    resolver = MagicMock()
    resolver.query_dns = AsyncMock(side_effect=_query)
    return resolver


def _cname(value):
    return MagicMock(cname=value)


def _txt(value):
    return MagicMock(text=value)


def _a(value):
    return MagicMock(host=value)


class TestDNSVerifierBasics:
    def test_token_format(self):
        verifier = DNSVerifier()
        token = verifier.generate_verification_token()
        assert token.startswith(TOKEN_PREFIX)
        assert token != verifier.generate_verification_token()

    def test_required_records_dns_method(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        records = verifier.required_records("shop.example.com", TOKEN, VerificationMethod.DNS)

        assert [(r.type, r.name, r.value) for r in records] == [
            ("CNAME", "shop.example.com", "edge.tenantgate.app"),
            ("TXT", "_tenantgate-challenge.shop.example.com", TOKEN),
        ]
        assert all(r.ttl == 300 for r in records)

    def test_required_records_email_method(self):
        records = DNSVerifier().required_records("shop.example.com", None, VerificationMethod.EMAIL)
        assert [r.type for r in records] == ["CNAME"]

    def test_tokens_match(self):
        assert tokens_match(TOKEN, TOKEN)
        assert not tokens_match(TOKEN, TOKEN + "x")


class TestEvaluateRecords:
    """Tests for record classification."""

    @pytest.mark.asyncio
    async def test_verified(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver(
            {
                ("shop.example.com", "CNAME"): _cname("edge.tenantgate.app."),
                ("_tenantgate-challenge.shop.example.com", "TXT"): [_txt(TOKEN)],
            }
        )
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.VERIFIED
        assert result.cname_ok and result.txt_ok
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_nothing_published_is_pending(self):
        verifier = DNSVerifier()
        with patch.object(verifier, "_get_resolver", return_value=_resolver({})):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.PENDING
        assert len(result.issues) == 2

    @pytest.mark.asyncio
    async def test_wrong_cname_is_error(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver(
            {
                ("shop.example.com", "CNAME"): _cname("somewhere.else.net"),
                ("_tenantgate-challenge.shop.example.com", "TXT"): [_txt(TOKEN)],
            }
        )
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.ERROR
        assert "somewhere.else.net" in result.issues[0]

    @pytest.mark.asyncio
    async def test_a_records_instead_of_cname_is_error(self):
        verifier = DNSVerifier()
        resolver = _resolver({("shop.example.com", "A"): [_a("203.0.113.7")]})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com")

        assert result.status == DnsEvaluationStatus.ERROR
        assert result.observed_records[0].type == "A"

    @pytest.mark.asyncio
    async def test_wrong_token_is_error(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver(
            {
                ("shop.example.com", "CNAME"): _cname("edge.tenantgate.app"),
                ("_tenantgate-challenge.shop.example.com", "TXT"): [_txt("tenantgate-verify=old")],
            }
        )
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.ERROR
        assert result.txt_ok is False

    @pytest.mark.asyncio
    async def test_cname_only_txt_missing_is_pending(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver({("shop.example.com", "CNAME"): _cname("edge.tenantgate.app")})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.PENDING
        assert result.cname_ok is True

    @pytest.mark.asyncio
    async def test_timeout_is_pending_not_raised(self):
        """Resolver trouble is reported, never raised."""
        verifier = DNSVerifier(timeout=0.01)

        async def _hang(name, record_type):
            await asyncio.sleep(1)

        resolver = MagicMock()
        resolver.query_dns = AsyncMock(side_effect=_hang)
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate_records("shop.example.com", TOKEN)

        assert result.status == DnsEvaluationStatus.PENDING
        assert result.timed_out is True

    @pytest.mark.asyncio
    async def test_evaluation_is_idempotent(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver({("shop.example.com", "CNAME"): _cname("edge.tenantgate.app")})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            first = await verifier.evaluate_records("shop.example.com")
            second = await verifier.evaluate_records("shop.example.com")

        assert first.to_dict() == second.to_dict()


class TestFileMethod:
    """Tests for the HTTP verification file probe."""

    @pytest.mark.asyncio
    async def test_file_probe_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == VERIFICATION_FILE_PATH
            return httpx.Response(200, text=TOKEN + "\n")

        verifier = DNSVerifier(http_transport=httpx.MockTransport(handler))
        ok, issue = await verifier.probe_verification_file("shop.example.com", TOKEN)

        assert ok is True
        assert issue is None

    @pytest.mark.asyncio
    async def test_file_probe_not_found(self):
        verifier = DNSVerifier(http_transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        ok, issue = await verifier.probe_verification_file("shop.example.com", TOKEN)

        assert ok is False
        assert "404" in issue

    @pytest.mark.asyncio
    async def test_file_method_needs_cname_and_file(self):
        verifier = DNSVerifier(
            cname_target="edge.tenantgate.app",
            http_transport=httpx.MockTransport(lambda r: httpx.Response(200, text="wrong")),
        )
        resolver = _resolver({("shop.example.com", "CNAME"): _cname("edge.tenantgate.app")})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate("shop.example.com", VerificationMethod.FILE, TOKEN)

        assert result.status == DnsEvaluationStatus.PENDING
        assert result.file_ok is False

    @pytest.mark.asyncio
    async def test_email_method_cname_alone_is_not_enough(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver({("shop.example.com", "CNAME"): _cname("edge.tenantgate.app")})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate("shop.example.com", VerificationMethod.EMAIL, TOKEN)

        assert result.cname_ok is True
        assert result.email_ok is False
        assert result.status == DnsEvaluationStatus.PENDING
        assert any("not been confirmed" in issue for issue in result.issues)

    @pytest.mark.asyncio
    async def test_email_method_confirmed_with_cname(self):
        verifier = DNSVerifier(cname_target="edge.tenantgate.app")
        resolver = _resolver({("shop.example.com", "CNAME"): _cname("edge.tenantgate.app")})
        with patch.object(verifier, "_get_resolver", return_value=resolver):
            result = await verifier.evaluate(
                "shop.example.com", VerificationMethod.EMAIL, TOKEN, email_confirmed=True
            )

        assert result.status == DnsEvaluationStatus.VERIFIED
        assert result.email_ok is True

    def test_email_recipients(self):
        recipients = DNSVerifier().email_recipients("shop.example.com")

        assert "admin@shop.example.com" in recipients
        assert "hostmaster@shop.example.com" in recipients
