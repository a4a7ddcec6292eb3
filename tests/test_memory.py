from __future__ import annotations

import datetime as dt

import pytest

from portalgate.exceptions import ProviderError
from portalgate.memory import AttemptLimiter, InMemoryIdentityProvider, InMemoryProfileStore
from portalgate.models import OtpChannel, SessionEvent
from portalgate.testing import FakeClock
from tests.support import fast_hasher


@pytest.mark.asyncio
async def test_password_hashes_are_salted_and_verifiable() -> None:
    hasher = fast_hasher()
    first = await hasher.hash("s3cret!", salt="a" * 16)
    second = await hasher.hash("s3cret!", salt="b" * 16)
    assert first != second
    assert await hasher.verify("s3cret!", salt="a" * 16, expected=first)
    assert not await hasher.verify("wrong", salt="a" * 16, expected=first)


def test_attempt_limiter_locks_out_and_recovers() -> None:
    clock = FakeClock()
    limiter = AttemptLimiter(max_attempts=2, lockout_period=dt.timedelta(minutes=1))
    limiter.record_failure("k", clock())
    limiter.enforce("k", clock())
    limiter.record_failure("k", clock())

    with pytest.raises(ProviderError) as excinfo:
        limiter.enforce("k", clock())
    assert excinfo.value.code == "over_request_rate_limit"
    assert excinfo.value.status == 429

    clock.advance(minutes=2)
    limiter.enforce("k", clock())


@pytest.mark.asyncio
async def test_provider_broadcasts_session_changes() -> None:
    clock = FakeClock()
    provider = InMemoryIdentityProvider(clock=clock, hasher=fast_hasher())
    received: list[tuple[SessionEvent, bool]] = []
    subscription = provider.on_session_change(lambda event, session: received.append((event, session is not None)))
    await provider.seed_account("doc@example.com", "s3cret!", {"user_type": "doctor"})

    await provider.sign_in_with_password("doc@example.com", "s3cret!")
    await provider.sign_out()
    subscription.unsubscribe()
    subscription.unsubscribe()
    await provider.sign_in_with_password("doc@example.com", "s3cret!")

    assert received == [(SessionEvent.SIGNED_IN, True), (SessionEvent.SIGNED_OUT, False)]
    assert provider.subscriber_count() == 0


@pytest.mark.asyncio
async def test_provider_locks_out_repeated_bad_passwords() -> None:
    provider = InMemoryIdentityProvider(
        clock=FakeClock(), hasher=fast_hasher(), limiter=AttemptLimiter(max_attempts=2)
    )
    await provider.seed_account("doc@example.com", "s3cret!")

    for _ in range(2):
        with pytest.raises(ProviderError):
            await provider.sign_in_with_password("doc@example.com", "nope")

    with pytest.raises(ProviderError) as excinfo:
        await provider.sign_in_with_password("doc@example.com", "s3cret!")
    assert excinfo.value.code == "over_request_rate_limit"


@pytest.mark.asyncio
async def test_provider_session_expires() -> None:
    clock = FakeClock()
    provider = InMemoryIdentityProvider(clock=clock, hasher=fast_hasher(), session_ttl=dt.timedelta(minutes=5))
    await provider.seed_account("doc@example.com", "s3cret!")
    await provider.sign_in_with_password("doc@example.com", "s3cret!")

    assert await provider.get_session() is not None
    clock.advance(minutes=5)
    assert await provider.get_session() is None


@pytest.mark.asyncio
async def test_provider_codes_are_single_use() -> None:
    provider = InMemoryIdentityProvider(clock=FakeClock(), hasher=fast_hasher())
    await provider.send_one_time_code(OtpChannel.EMAIL, "asha@example.com", {})
    code = provider.last_code(OtpChannel.EMAIL, "asha@example.com")
    assert code is not None and len(code) == 6

    first = await provider.verify_one_time_code(OtpChannel.EMAIL, "asha@example.com", code)
    with pytest.raises(ProviderError) as excinfo:
        await provider.verify_one_time_code(OtpChannel.EMAIL, "asha@example.com", code)

    assert first.identity.email == "asha@example.com"
    assert excinfo.value.code == "invalid_otp"


@pytest.mark.asyncio
async def test_profile_store_constraints() -> None:
    store = InMemoryProfileStore()
    await store.insert({"identity_id": "abc", "role": "patient"})

    with pytest.raises(ProviderError) as duplicate:
        await store.insert({"identity_id": "abc", "role": "patient"})
    with pytest.raises(ProviderError) as missing_id:
        await store.insert({"role": "patient"})
    with pytest.raises(ProviderError) as missing_row:
        await store.update("zzz", {"full_name": "x"})

    assert duplicate.value.code == "23505"
    assert missing_id.value.code == "23502"
    assert missing_row.value.code == "PGRST116"
    assert store.count("insert") == 3
