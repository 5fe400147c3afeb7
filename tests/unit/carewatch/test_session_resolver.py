"""
Tests for session resolution in `carewatch/services/session_resolver.py`.

Covers:
- Profile-integrity failures (missing profile, bad role, failing lookup) -> Invalid + sign-out
- Successful resolution into a role-bearing Session
- Race guard: out-of-order lookups never overwrite the live session
- Provider error codes mapped to fixed user-facing messages
- Registration and sign-out flows, including a failed profile write
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator
from typing import Any

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from adapters.memory.documents import InMemoryDocumentStore
from adapters.memory.identity import InMemoryIdentityProvider
from carewatch.domain.models import (
    Invalid,
    Loading,
    Principal,
    Resolved,
    Role,
    Session,
    SessionState,
    SignedOut,
)
from carewatch.services.contracts import IdentityErrorCode, IdentityProviderError, Result
from carewatch.services.session_resolver import (
    DEFAULT_SIGN_IN_MESSAGE,
    PROFILE_CREATE_FAILED_MESSAGE,
    SIGN_IN_ERROR_MESSAGES,
    SessionResolver,
    session_state_from_profile,
)


async def _drain(rounds: int = 10) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class GatedProfileStore:
    """Profile store whose lookups complete only when the test releases them."""

    def __init__(self, profiles: dict[str, dict[str, Any]]) -> None:
        self.profiles = profiles
        self.calls: list[tuple[str, asyncio.Event]] = []

    async def get_document(self, path: str) -> dict[str, Any] | None:
        gate = asyncio.Event()
        self.calls.append((path, gate))
        await gate.wait()
        return self.profiles.get(path)

    async def set_document(self, path: str, data: dict[str, Any]) -> None:
        self.profiles[path] = data


class ScriptedProvider:
    """Identity provider returning a fixed sign-in result."""

    def __init__(self, result: Result[Principal, IdentityProviderError] | None = None) -> None:
        self.result = result
        self.sign_out_calls = 0
        self.fail_sign_out = False
        self.current_principal: Principal | None = None
        self.deleted: list[str] = []

    async def sign_in(self, email: str, password: str) -> Result[Principal, IdentityProviderError]:
        assert self.result is not None
        return self.result

    async def create_user(
        self, email: str, password: str
    ) -> Result[Principal, IdentityProviderError]:
        assert self.result is not None
        return self.result

    async def delete_user(self, identity_id: str) -> None:
        self.deleted.append(identity_id)

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        if self.fail_sign_out:
            raise ConnectionError("provider unreachable")

    async def session_changes(self) -> AsyncIterator[Principal | None]:
        yield None


def _report(resolver: SessionResolver, principal: Principal | None) -> None:
    """Deliver a provider event as the scripted provider would."""
    resolver.provider.current_principal = principal
    resolver.handle_session_change(principal)


@pytest.fixture
def provider() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider()


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


class TestSessionStateFromProfile:
    def test_missing_profile(self) -> None:
        state = session_state_from_profile(Principal(identity_id="u1"), None)
        assert state == Invalid(reason="missing-profile")

    @pytest.mark.parametrize("role", [None, "", "admin", "doctor"])
    def test_bad_role(self, role: str | None) -> None:
        state = session_state_from_profile(Principal(identity_id="u1"), {"role": role})
        assert state == Invalid(reason="bad-role")

    def test_resolved_keeps_profile_and_prefers_profile_email(self) -> None:
        profile = {"role": "caretaker", "email": "care@b.com", "firstName": "Ada"}
        state = session_state_from_profile(
            Principal(identity_id="u1", email="login@b.com"), profile
        )

        assert isinstance(state, Resolved)
        assert state.session.role is Role.CARETAKER
        assert state.session.email == "care@b.com"
        assert state.session.profile["firstName"] == "Ada"


class TestResolution:
    @pytest.mark.asyncio
    async def test_valid_profile_resolves(
        self, provider: InMemoryIdentityProvider, documents: InMemoryDocumentStore
    ) -> None:
        provider.add_account("a@b.com", "secret1", identity_id="u1")
        await documents.set_document("users/u1", {"role": "patient", "email": "a@b.com"})
        resolver = SessionResolver(provider, documents)

        async with resolver.running():
            await _drain()
            assert resolver.store.state == SignedOut()

            result = await resolver.sign_in("a@b.com", "secret1")
            await _drain()

        assert result.is_ok()
        assert resolver.store.session == Session(
            identity_id="u1",
            email="a@b.com",
            role=Role.PATIENT,
            profile={"role": "patient", "email": "a@b.com"},
        )

    @pytest.mark.parametrize(
        "profile,reason",
        [(None, "missing-profile"), ({"role": "superuser"}, "bad-role")],
    )
    @pytest.mark.asyncio
    async def test_integrity_failures_invalidate_and_sign_out(
        self,
        provider: InMemoryIdentityProvider,
        documents: InMemoryDocumentStore,
        profile: dict[str, Any] | None,
        reason: str,
    ) -> None:
        provider.add_account("a@b.com", "secret1", identity_id="u1")
        if profile is not None:
            await documents.set_document("users/u1", profile)
        resolver = SessionResolver(provider, documents)
        seen: list[SessionState] = []

        async def collect() -> None:
            async for state in resolver.observe_session():
                seen.append(state)

        collector = asyncio.create_task(collect())
        async with resolver.running():
            await _drain()
            await resolver.sign_in("a@b.com", "secret1")
            await _drain()
        collector.cancel()
        with pytest.raises(asyncio.CancelledError):
            await collector

        assert provider.sign_out_calls == 1
        assert Invalid(reason=reason) in seen
        assert not any(isinstance(state, Resolved) for state in seen)
        assert seen.index(Invalid(reason=reason)) < len(seen) - 1
        assert seen[-1] == SignedOut()

    @pytest.mark.asyncio
    async def test_invalid_state_outlives_forced_sign_out_call(self) -> None:
        provider = ScriptedProvider()
        documents = InMemoryDocumentStore()
        resolver = SessionResolver(provider, documents)

        _report(resolver, Principal(identity_id="ghost"))
        await _drain()

        assert resolver.store.state == Invalid(reason="missing-profile")
        assert provider.sign_out_calls == 1

    @pytest.mark.asyncio
    async def test_failing_lookup_is_fatal_to_the_session(self) -> None:
        provider = ScriptedProvider()
        documents = InMemoryDocumentStore()
        documents.read_error = ConnectionError("store unavailable")
        resolver = SessionResolver(provider, documents)

        _report(resolver, Principal(identity_id="u1"))
        await _drain()

        assert resolver.store.state == Invalid(reason="lookup-failed")
        assert provider.sign_out_calls == 1

    @pytest.mark.asyncio
    async def test_failed_forced_sign_out_keeps_session_invalid(self) -> None:
        provider = ScriptedProvider()
        provider.fail_sign_out = True
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        _report(resolver, Principal(identity_id="u1"))
        await _drain()

        assert resolver.store.state == Invalid(reason="missing-profile")
        assert resolver.store.session is None

    @pytest.mark.asyncio
    async def test_loading_until_lookup_completes(self) -> None:
        profiles = GatedProfileStore({"users/u1": {"role": "medical"}})
        resolver = SessionResolver(ScriptedProvider(), profiles)

        _report(resolver, Principal(identity_id="u1"))
        await _drain()
        assert resolver.store.state == Loading()

        profiles.calls[0][1].set()
        await _drain()
        assert isinstance(resolver.store.state, Resolved)

    @pytest.mark.asyncio
    async def test_sign_out_event_cancels_in_flight_lookup(self) -> None:
        profiles = GatedProfileStore({"users/u1": {"role": "medical"}})
        resolver = SessionResolver(ScriptedProvider(), profiles)

        _report(resolver, Principal(identity_id="u1"))
        await _drain()
        _report(resolver, None)
        profiles.calls[0][1].set()
        await _drain()

        assert resolver.store.state == SignedOut()


class TestRaceGuard:
    @pytest.mark.asyncio
    async def test_rapid_identity_changes_resolved_out_of_order(self) -> None:
        profiles = GatedProfileStore(
            {"users/A": {"role": "patient"}, "users/B": {"role": "medical"}}
        )
        resolver = SessionResolver(ScriptedProvider(), profiles)

        for identity in ("A", "B", "A"):
            _report(resolver, Principal(identity_id=identity))
            await _drain()

        for _, gate in reversed(profiles.calls):
            gate.set()
            await _drain()
            session = resolver.store.session
            assert session is None or session.identity_id == "A"

        session = resolver.store.session
        assert session is not None
        assert session.identity_id == "A"
        assert session.role is Role.PATIENT

    def test_lookup_for_superseded_identity_is_discarded(self) -> None:
        provider = ScriptedProvider()
        provider.current_principal = Principal(identity_id="B")
        resolver = SessionResolver(provider, GatedProfileStore({}))
        resolver._current_identity = "B"
        stale = Resolved(session=Session(identity_id="A", role=Role.PATIENT))

        assert resolver.apply_lookup("A", stale) is False
        assert resolver.store.state == Loading()

        fresh = Resolved(session=Session(identity_id="B", role=Role.MEDICAL))
        assert resolver.apply_lookup("B", fresh) is True
        assert resolver.store.state == fresh

    @pytest.mark.asyncio
    async def test_lookup_discarded_when_provider_moved_on_before_event_arrives(self) -> None:
        profiles = GatedProfileStore({"users/A": {"role": "patient"}})
        provider = ScriptedProvider()
        resolver = SessionResolver(provider, profiles)

        _report(resolver, Principal(identity_id="A"))
        await _drain()
        # The provider already switched to B; its event has not been consumed yet.
        provider.current_principal = Principal(identity_id="B")
        profiles.calls[0][1].set()
        await _drain()

        assert resolver.current_identity == "A"
        assert resolver.store.state == Loading()
        assert resolver.store.session is None

    @settings(max_examples=40, deadline=None)
    @given(
        events=st.lists(st.sampled_from(["A", "B", "C", None]), min_size=1, max_size=6),
        rng=st.randoms(use_true_random=False),
    )
    def test_session_never_reflects_a_superseded_lookup(
        self, events: list[str | None], rng: random.Random
    ) -> None:
        """Property: whatever the completion order, the live session matches the provider."""

        async def scenario() -> tuple[list[str], SessionState]:
            profiles = GatedProfileStore(
                {f"users/{identity}": {"role": "patient"} for identity in "ABC"}
            )
            resolver = SessionResolver(ScriptedProvider(), profiles)
            violations: list[str] = []

            def check() -> None:
                session = resolver.store.session
                if session is not None and session.identity_id != resolver.current_identity:
                    violations.append(session.identity_id)

            for identity in events:
                principal = Principal(identity_id=identity) if identity else None
                _report(resolver, principal)
                await _drain()
                check()

            gates = [gate for _, gate in profiles.calls]
            rng.shuffle(gates)
            for gate in gates:
                gate.set()
                await _drain()
                check()
            return violations, resolver.store.state

        violations, final_state = asyncio.run(scenario())

        assert violations == []
        if events[-1] is None:
            assert final_state == SignedOut()
        else:
            assert isinstance(final_state, Resolved)
            assert final_state.session.identity_id == events[-1]


class TestSignIn:
    @pytest.mark.parametrize("code", list(IdentityErrorCode))
    @pytest.mark.asyncio
    async def test_provider_codes_map_to_fixed_messages(self, code: IdentityErrorCode) -> None:
        provider = ScriptedProvider(Result.err(IdentityProviderError(code, "raw provider text")))
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        result = await resolver.sign_in("a@b.com", "secret1")

        assert result.is_err()
        error = result.unwrap_err()
        assert error.message == SIGN_IN_ERROR_MESSAGES.get(code, DEFAULT_SIGN_IN_MESSAGE)
        assert code.value not in error.message
        assert "raw provider text" not in error.message

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_read_the_same(
        self, provider: InMemoryIdentityProvider
    ) -> None:
        provider.add_account("a@b.com", "secret1")
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        wrong_password = await resolver.sign_in("a@b.com", "nope")
        unknown_user = await resolver.sign_in("who@b.com", "secret1")

        assert wrong_password.unwrap_err().message == unknown_user.unwrap_err().message

    @pytest.mark.asyncio
    async def test_network_failure_message(self, provider: InMemoryIdentityProvider) -> None:
        provider.add_account("a@b.com", "secret1")
        provider.network_available = False
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        result = await resolver.sign_in("a@b.com", "secret1")

        assert result.unwrap_err().code is IdentityErrorCode.NETWORK_REQUEST_FAILED
        assert "Network error" in result.unwrap_err().message


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_writes_profile_then_signs_in(
        self, provider: InMemoryIdentityProvider, documents: InMemoryDocumentStore
    ) -> None:
        resolver = SessionResolver(provider, documents)

        async with resolver.running():
            await _drain()
            result = await resolver.register(
                "new@b.com",
                "secret1",
                "caretaker",
                {"firstName": "Ada", "role": "medical"},
            )
            await _drain()

        principal = result.unwrap()
        profile = await documents.get_document(f"users/{principal.identity_id}")
        assert profile is not None
        assert profile["role"] == "caretaker"  # caller fields cannot override the role
        assert profile["uid"] == principal.identity_id
        assert profile["firstName"] == "Ada"
        assert profile["createdAt"].tzinfo is not None
        assert resolver.store.session is not None
        assert resolver.store.session.role is Role.CARETAKER

    @pytest.mark.asyncio
    async def test_register_rejects_unknown_role_before_creating_account(
        self, provider: InMemoryIdentityProvider
    ) -> None:
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        with pytest.raises(ValueError, match="Unknown role"):
            await resolver.register("new@b.com", "secret1", "admin")

        retry = await resolver.register("new@b.com", "secret1", Role.PATIENT)
        assert retry.is_ok()

    @pytest.mark.asyncio
    async def test_register_existing_email(self, provider: InMemoryIdentityProvider) -> None:
        provider.add_account("taken@b.com", "secret1")
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        result = await resolver.register("taken@b.com", "secret1", "patient")

        assert result.unwrap_err().code is IdentityErrorCode.EMAIL_ALREADY_IN_USE

    @pytest.mark.asyncio
    async def test_profile_write_failure_returns_error_and_allows_retry(
        self, provider: InMemoryIdentityProvider, documents: InMemoryDocumentStore
    ) -> None:
        documents.write_error = ConnectionError("store unavailable")
        resolver = SessionResolver(provider, documents)

        async with resolver.running():
            await _drain()
            failed = await resolver.register("new@b.com", "secret1", "patient")
            await _drain()
            assert failed.unwrap_err().message == PROFILE_CREATE_FAILED_MESSAGE
            assert "store unavailable" not in failed.unwrap_err().message
            assert resolver.store.state == SignedOut()

            documents.write_error = None
            retry = await resolver.register("new@b.com", "secret1", "patient")
            await _drain()

        principal = retry.unwrap()
        assert await documents.get_document(f"users/{principal.identity_id}") is not None
        assert resolver.store.session is not None
        assert resolver.store.session.role is Role.PATIENT

    @pytest.mark.asyncio
    async def test_profile_write_failure_discards_the_new_account(self) -> None:
        provider = ScriptedProvider(Result.ok(Principal(identity_id="n1", email="new@b.com")))
        documents = InMemoryDocumentStore()
        documents.write_error = ConnectionError("store unavailable")
        resolver = SessionResolver(provider, documents)

        result = await resolver.register("new@b.com", "secret1", "medical")

        assert result.is_err()
        assert provider.deleted == ["n1"]
        assert resolver.store.session is None


class TestSignOut:
    @pytest.mark.asyncio
    async def test_sign_out_resets_even_if_provider_fails(self) -> None:
        provider = ScriptedProvider()
        provider.fail_sign_out = True
        resolver = SessionResolver(provider, InMemoryDocumentStore())
        resolver.store.publish(
            Resolved(session=Session(identity_id="u1", role=Role.PATIENT))
        )

        await resolver.sign_out()

        assert resolver.store.state == SignedOut()
        assert resolver.current_identity is None

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, provider: InMemoryIdentityProvider) -> None:
        resolver = SessionResolver(provider, InMemoryDocumentStore())

        async with resolver.running():
            with pytest.raises(RuntimeError, match="already started"):
                resolver.start()
