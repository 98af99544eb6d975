"""Tests for the verification workflow."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tenantgate.domains.errors import (
    DnsNotPropagated,
    InvalidTransition,
    VerificationFailed,
)
from tenantgate.domains.models import (
    DnsEvaluationStatus,
    DomainKind,
    MappingSpec,
    MappingStatus,
    VerificationMethod,
)
from tenantgate.domains.workflow import recheck_delay


async def _pending(env, domain="shop.example.com"):
    mapping = await env.registry.create("t1", MappingSpec(domain=domain))
    return await env.workflow.initiate_verification("t1", mapping.id)


class TestRecheckSchedule:
    def test_backoff_steps(self):
        assert [recheck_delay(n) for n in range(6)] == [60, 300, 900, 3600, 3600, 3600]


class TestInitiate:
    """Tests for starting verification."""

    @pytest.mark.asyncio
    async def test_issues_token_and_records(self, env):
        mapping = await _pending(env)

        v = mapping.verification
        assert v.token.startswith("tenantgate-verify=")
        assert {r.type for r in v.required_records} == {"CNAME", "TXT"}
        assert v.next_check_at == env.clock() + timedelta(seconds=60)
        assert v.attempts == 0

    @pytest.mark.asyncio
    async def test_reinitiate_rotates_token(self, env):
        first = await _pending(env)
        second = await env.workflow.initiate_verification("t1", first.id)
        assert second.verification.token != first.verification.token

    @pytest.mark.asyncio
    async def test_email_method_mails_token_to_contacts(self, env):
        mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))
        mapping = await env.workflow.initiate_verification(
            "t1", mapping.id, method=VerificationMethod.EMAIL
        )

        assert mapping.verification.token.startswith("tenantgate-verify=")
        assert [r.type for r in mapping.verification.required_records] == ["CNAME"]
        challenge = env.events("domain.email_challenge")[0]
        assert challenge["token"] == mapping.verification.token
        assert "hostmaster@shop.example.com" in challenge["recipients"]
        assert "token" not in mapping.to_public_dict()["verification"]

    @pytest.mark.asyncio
    async def test_active_mapping_cannot_reinitiate(self, env):
        mapping = await _pending(env)
        env.verifier.publish()
        await env.workflow.verify_domain("t1", mapping.id)
        await env.lifecycle.wait_idle()

        with pytest.raises(InvalidTransition):
            await env.workflow.initiate_verification("t1", mapping.id)

    @pytest.mark.asyncio
    async def test_error_mapping_returns_to_pending(self, env):
        mapping = await _pending(env)
        env.verifier.publish()
        await env.workflow.verify_domain("t1", mapping.id)
        await env.lifecycle.wait_idle()
        active = await env.registry.get("t1", mapping.id)
        await env.registry.set_status(active, MappingStatus.ERROR)

        restarted = await env.workflow.initiate_verification("t1", mapping.id)

        assert restarted.status == MappingStatus.PENDING_VERIFICATION
        assert restarted.verification.verified_at is None


class TestVerifyDomain:
    """Tests for evaluating DNS and activating mappings."""

    @pytest.mark.asyncio
    async def test_success_activates_and_requests_certificate(self, env):
        mapping = await _pending(env)
        env.verifier.publish()
        env.clock.advance(minutes=5)

        outcome = await env.workflow.verify_domain("t1", mapping.id)
        await env.lifecycle.wait_idle()

        stored = await env.registry.get("t1", mapping.id)
        assert outcome.verified is True
        assert outcome.certificate_requested is True
        assert outcome.propagation_seconds == 300
        assert stored.status == MappingStatus.ACTIVE
        assert stored.verification.verified_at == env.clock()
        assert stored.verification.next_check_at is None
        assert env.authority.issued == ["shop.example.com"]
        assert env.events("domain.verified")[0]["domain"] == "shop.example.com"

    @pytest.mark.asyncio
    async def test_pending_keeps_status_and_schedules_recheck(self, env):
        """A failed check never changes the mapping's status."""
        mapping = await _pending(env)

        outcome = await env.workflow.verify_domain("t1", mapping.id)

        stored = await env.registry.get("t1", mapping.id)
        assert outcome.verified is False
        assert outcome.status == DnsEvaluationStatus.PENDING
        assert outcome.retry_after_seconds == 300
        assert outcome.suggestions
        assert stored.status == MappingStatus.PENDING_VERIFICATION
        assert stored.verification.attempts == 1
        assert stored.verification.last_issues == ["CNAME record not found"]
        assert env.events("domain.verification_failed") == []

        with pytest.raises(DnsNotPropagated):
            outcome.raise_for_status()

    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(self, env):
        mapping = await _pending(env)
        delays = []
        for _ in range(4):
            outcome = await env.workflow.verify_domain("t1", mapping.id)
            delays.append(outcome.retry_after_seconds)

        assert delays == [300, 900, 3600, 3600]

    @pytest.mark.asyncio
    async def test_mismatch_notifies_tenant(self, env):
        mapping = await _pending(env)
        env.verifier.status = DnsEvaluationStatus.ERROR
        env.verifier.issues = ["CNAME for shop.example.com points to elsewhere.net"]

        outcome = await env.workflow.verify_domain("t1", mapping.id)

        assert outcome.mapping_status == MappingStatus.PENDING_VERIFICATION
        assert env.events("domain.verification_failed")[0]["issues"] == env.verifier.issues
        with pytest.raises(VerificationFailed):
            outcome.raise_for_status()

    @pytest.mark.asyncio
    async def test_stalls_after_cap(self, env):
        """Automatic rechecks stop after a day and the tenant is told once."""
        mapping = await _pending(env)
        env.clock.advance(hours=24)

        outcome = await env.workflow.verify_domain("t1", mapping.id)
        again = await env.workflow.verify_domain("t1", mapping.id)

        assert outcome.stalled is True
        assert outcome.retry_after_seconds is None
        assert again.stalled is True
        assert len(env.events("domain.verification_stalled")) == 1

    @pytest.mark.asyncio
    async def test_manual_verify_after_stall_still_works(self, env):
        mapping = await _pending(env)
        env.clock.advance(hours=25)
        await env.workflow.verify_domain("t1", mapping.id)

        env.verifier.publish()
        outcome = await env.workflow.verify_domain("t1", mapping.id)
        await env.lifecycle.wait_idle()

        assert outcome.verified is True
        assert (await env.registry.get("t1", mapping.id)).verification.stalled is False

    @pytest.mark.asyncio
    async def test_subdomain_verifies_without_dns(self, env):
        mapping = await env.registry.create(
            "t1", MappingSpec(domain="acme.tenantgate.app", kind=DomainKind.SUBDOMAIN)
        )

        outcome = await env.workflow.verify_domain("t1", mapping.id)

        assert outcome.verified is True
        assert outcome.certificate_requested is False
        assert env.verifier.calls == 0

    @pytest.mark.asyncio
    async def test_verify_active_is_noop(self, env):
        mapping = await _pending(env)
        env.verifier.publish()
        await env.workflow.verify_domain("t1", mapping.id)
        await env.lifecycle.wait_idle()
        calls = env.verifier.calls

        outcome = await env.workflow.verify_domain("t1", mapping.id)

        assert outcome.verified is True
        assert env.verifier.calls == calls

    @pytest.mark.asyncio
    async def test_deleting_mapping_cannot_be_verified(self, env):
        mapping = await _pending(env)
        await env.registry.mark_deleting("t1", mapping.id)

        with pytest.raises(InvalidTransition):
            await env.workflow.verify_domain("t1", mapping.id)


async def _pending_email(env, domain="shop.example.com"):
    mapping = await env.registry.create("t1", MappingSpec(domain=domain))
    return await env.workflow.initiate_verification("t1", mapping.id, method=VerificationMethod.EMAIL)


class TestEmailConfirmation:
    """Email verification needs the mailed token back, not just a CNAME."""

    @pytest.mark.asyncio
    async def test_cname_alone_does_not_activate(self, env):
        """A CNAME left dangling at the edge must not hand the domain to a new tenant."""
        mapping = await _pending_email(env)
        env.verifier.publish()

        outcome = await env.workflow.verify_domain("t1", mapping.id)

        stored = await env.registry.get("t1", mapping.id)
        assert outcome.verified is False
        assert outcome.status == DnsEvaluationStatus.PENDING
        assert any("ownership email" in s for s in outcome.suggestions)
        assert stored.status == MappingStatus.PENDING_VERIFICATION
        assert await env.resolver.resolve_tenant("shop.example.com") is None

    @pytest.mark.asyncio
    async def test_wrong_token_is_rejected(self, env):
        mapping = await _pending_email(env)
        env.verifier.publish()

        with pytest.raises(VerificationFailed):
            await env.workflow.confirm_email_verification("t1", mapping.id, "tenantgate-verify=guess")

        stored = await env.registry.get("t1", mapping.id)
        assert stored.verification.email_confirmed_at is None
        assert stored.status == MappingStatus.PENDING_VERIFICATION

    @pytest.mark.asyncio
    async def test_mailed_token_activates(self, env):
        mapping = await _pending_email(env)
        env.verifier.publish()
        token = env.events("domain.email_challenge")[0]["token"]

        outcome = await env.workflow.confirm_email_verification("t1", mapping.id, token, actor="owner")
        await env.lifecycle.wait_idle()

        stored = await env.registry.get("t1", mapping.id)
        assert outcome.verified is True
        assert stored.status == MappingStatus.ACTIVE
        assert stored.verification.email_confirmed_at == env.clock()
        assert env.authority.issued == ["shop.example.com"]

    @pytest.mark.asyncio
    async def test_confirmation_waits_for_cname(self, env):
        mapping = await _pending_email(env)
        token = mapping.verification.token

        outcome = await env.workflow.confirm_email_verification("t1", mapping.id, token)
        env.verifier.publish()
        later = await env.workflow.verify_domain("t1", mapping.id)

        assert outcome.verified is False
        assert later.verified is True

    @pytest.mark.asyncio
    async def test_reissued_challenge_voids_old_token(self, env):
        mapping = await _pending_email(env)
        old_token = mapping.verification.token
        await env.workflow.initiate_verification("t1", mapping.id)

        with pytest.raises(VerificationFailed):
            await env.workflow.confirm_email_verification("t1", mapping.id, old_token)

    @pytest.mark.asyncio
    async def test_dns_method_cannot_be_confirmed_by_email(self, env):
        mapping = await _pending(env)

        with pytest.raises(InvalidTransition):
            await env.workflow.confirm_email_verification("t1", mapping.id, mapping.verification.token)


class TestDueRechecks:
    """Tests for the automatic recheck pass."""

    @pytest.mark.asyncio
    async def test_only_due_mappings_are_checked(self, env):
        first = await _pending(env, "a.example.org")
        await _pending(env, "b.example.org")
        env.clock.advance(seconds=61)
        await env.workflow.verify_domain("t1", first.id)
        calls = env.verifier.calls

        results = await env.workflow.run_due_rechecks()

        assert results == {"b.example.org": "pending"}
        assert env.verifier.calls == calls + 1

    @pytest.mark.asyncio
    async def test_recheck_activates_published_domain(self, env):
        mapping = await _pending(env)
        env.verifier.publish()
        env.clock.advance(minutes=2)

        results = await env.workflow.run_due_rechecks()
        await env.lifecycle.wait_idle()

        assert results == {"shop.example.com": "verified"}
        assert (await env.registry.get("t1", mapping.id)).status == MappingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stalled_mappings_are_skipped(self, env):
        await _pending(env)
        env.clock.advance(hours=25)
        await env.workflow.run_due_rechecks()
        env.clock.advance(hours=2)

        assert await env.workflow.run_due_rechecks() == {}
