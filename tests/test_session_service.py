"""Tests for the sign-in, refresh and logout flows end to end over MemoryStore."""

import pytest

from otpgate.config import DEV_PLACEHOLDER_SECRET, FixedEnvironment, Settings
from otpgate.service.email import EmailService
from otpgate.service.errors import (
    AuthenticationError,
    ConfigurationError,
    DeliveryFailedError,
    ErrorKind,
    ExpiredError,
    InvalidInputError,
    MismatchError,
    NotFoundError,
    RateLimitedError,
    SessionInvalidError,
    SuspendedError,
)
from otpgate.storage.errors import StoreUnavailable

from conftest import TEST_SECRET, RecordingEmailSender

EMAIL = "attendee@example.com"
PRODUCTION = FixedEnvironment("production")


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestRequestChallenge:
    async def test_sends_code_and_echoes_it_outside_production(self, make_session_service, email_sender):
        service = make_session_service()

        receipt = await service.request_challenge("  Attendee@Example.com", "10.0.0.1")

        assert receipt.identity == EMAIL
        assert receipt.delivered
        assert email_sender.sent == [(EMAIL, receipt.dev_code)]

    async def test_code_not_echoed_in_production(self, make_session_service, email_sender):
        service = make_session_service(environment=PRODUCTION)
        receipt = await service.request_challenge(EMAIL, "10.0.0.1")
        assert receipt.dev_code is None
        assert email_sender.last_code is not None

    async def test_invalid_email_rejected_before_anything(self, make_session_service, email_sender, store):
        service = make_session_service()
        with pytest.raises(InvalidInputError):
            await service.request_challenge("not-an-email", "10.0.0.1")
        assert email_sender.sent == []
        assert store.rate_windows == {}

    async def test_rate_limited_with_retry_after(self, make_session_service):
        service = make_session_service(environment=PRODUCTION)
        for _ in range(3):
            await service.request_challenge(EMAIL, "10.0.0.1")

        with pytest.raises(RateLimitedError) as excinfo:
            await service.request_challenge(EMAIL, "10.0.0.1")

        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after == 900

    async def test_suspended_identity_cannot_request(self, make_session_service, email_sender):
        service = make_session_service()
        for _ in range(5):
            await service.suspensions.record_failure(EMAIL)

        with pytest.raises(SuspendedError) as excinfo:
            await service.request_challenge(EMAIL, "10.0.0.1")

        assert excinfo.value.retry_after == 300
        assert email_sender.sent == []

    async def test_delivery_failure_keeps_challenge_valid(self, make_session_service):
        sender = RecordingEmailSender(fail=True)
        service = make_session_service(email=sender)

        with pytest.raises(DeliveryFailedError):
            await service.request_challenge(EMAIL, "10.0.0.1")

        tokens = await service.redeem(EMAIL, sender.last_code)
        assert tokens.identity == EMAIL

    async def test_sender_exception_becomes_delivery_failure(self, make_session_service):
        service = make_session_service(email=RecordingEmailSender(error=ConnectionRefusedError()))
        with pytest.raises(DeliveryFailedError) as excinfo:
            await service.request_challenge(EMAIL, "10.0.0.1")
        assert excinfo.value.status_code == 502

    async def test_send_timeout(self, make_session_service):
        service = make_session_service(
            settings=Settings(jwt_secret=TEST_SECRET, email_send_timeout="1s"),
            email=RecordingEmailSender(hang=True),
        )
        with pytest.raises(DeliveryFailedError):
            await service.request_challenge(EMAIL, "10.0.0.1")
        assert await service.challenges.store.get_challenge(EMAIL) is not None

    async def test_unconfigured_smtp_fails_in_production(self, make_session_service):
        service = make_session_service(
            environment=PRODUCTION, email=EmailService(environment=PRODUCTION)
        )
        with pytest.raises(DeliveryFailedError):
            await service.request_challenge(EMAIL, "10.0.0.1")


class TestRedeem:
    async def test_successful_redeem_returns_tokens(self, make_session_service, email_sender):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")

        tokens = await service.redeem(EMAIL, email_sender.last_code)

        assert service.verify(tokens.access_token)["sub"] == EMAIL
        check = await service.refresh_tokens.validate(tokens.refresh_token)
        assert check.identity == EMAIL

    async def test_code_cannot_be_replayed(self, make_session_service, email_sender):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")
        await service.redeem(EMAIL, email_sender.last_code)

        with pytest.raises(NotFoundError):
            await service.redeem(EMAIL, email_sender.last_code)

    async def test_wrong_code_reports_attempts_remaining(self, make_session_service, email_sender):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")

        with pytest.raises(MismatchError) as excinfo:
            await service.redeem(EMAIL, _wrong(email_sender.last_code))

        assert excinfo.value.detail["attempts_remaining"] == 4

    async def test_fifth_failure_suspends_even_correct_code(self, make_session_service, email_sender):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")
        code = email_sender.last_code

        for _ in range(4):
            with pytest.raises(MismatchError):
                await service.redeem(EMAIL, _wrong(code))
        with pytest.raises(SuspendedError) as excinfo:
            await service.redeem(EMAIL, _wrong(code))
        assert excinfo.value.retry_after == 300

        with pytest.raises(SuspendedError):
            await service.redeem(EMAIL, code)

    async def test_four_failures_then_success_resets_count(self, make_session_service, email_sender):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")
        code = email_sender.last_code
        for _ in range(4):
            with pytest.raises(MismatchError):
                await service.redeem(EMAIL, _wrong(code))

        await service.redeem(EMAIL, code)

        assert await service.suspensions.store.get_suspension(EMAIL) is None

    async def test_missing_challenge_counts_as_failure(self, make_session_service):
        service = make_session_service()

        with pytest.raises(NotFoundError):
            await service.redeem(EMAIL, "482913")

        record = await service.suspensions.store.get_suspension(EMAIL)
        assert record.consecutive_failures == 1

    async def test_expired_code(self, make_session_service, email_sender, clock):
        service = make_session_service()
        await service.request_challenge(EMAIL, "10.0.0.1")
        clock.advance(minutes=10)

        with pytest.raises(ExpiredError) as excinfo:
            await service.redeem(EMAIL, email_sender.last_code)

        assert excinfo.value.status_code == 400

    @pytest.mark.parametrize("code", ["12345", "abcdef", "", "1234567"])
    async def test_malformed_code_is_not_a_failure(self, make_session_service, store, code):
        service = make_session_service()
        with pytest.raises(InvalidInputError):
            await service.redeem(EMAIL, code)
        assert store.suspensions == {}

    async def test_misconfigured_secret_does_not_burn_code(self, make_session_service, store):
        service = make_session_service(
            settings=Settings(jwt_secret=DEV_PLACEHOLDER_SECRET), environment=PRODUCTION
        )
        challenge = await service.challenges.issue(EMAIL)

        with pytest.raises(ConfigurationError):
            await service.redeem(EMAIL, challenge.code)

        assert (await store.get_challenge(EMAIL)).code == challenge.code
        assert store.suspensions == {}

    async def test_refresh_store_failure_after_consume_spends_code(
        self, make_session_service, store, monkeypatch
    ):
        service = make_session_service()
        challenge = await service.challenges.issue(EMAIL)
        await service.suspensions.record_failure(EMAIL)

        async def unavailable(*_args, **_kwargs):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "put_refresh", unavailable)

        with pytest.raises(StoreUnavailable):
            await service.redeem(EMAIL, challenge.code)

        assert await store.get_challenge(EMAIL) is None
        assert await store.get_suspension(EMAIL) is None
        assert store.refresh_tokens == {}


class TestBypass:
    @pytest.mark.parametrize("env", ["development", "test", "", None])
    async def test_bypass_accepted_in_non_production(self, make_session_service, env):
        service = make_session_service(environment=FixedEnvironment(env))
        tokens = await service.redeem(EMAIL, "123456")
        assert tokens.identity == EMAIL

    async def test_bypass_clears_suspension(self, make_session_service):
        service = make_session_service()
        for _ in range(5):
            await service.suspensions.record_failure(EMAIL)

        await service.redeem(EMAIL, "123456")

        assert not (await service.suspensions.is_suspended(EMAIL)).suspended

    @pytest.mark.parametrize("env", ["production", "staging", "prod"])
    async def test_bypass_rejected_in_hardened_environments(self, make_session_service, env):
        service = make_session_service(environment=FixedEnvironment(env))
        with pytest.raises(NotFoundError):
            await service.redeem(EMAIL, "123456")

    async def test_blank_bypass_setting_disables_it(self, make_session_service):
        service = make_session_service(
            settings=Settings(jwt_secret=TEST_SECRET, otp_bypass_code="")
        )
        with pytest.raises(NotFoundError):
            await service.redeem(EMAIL, "123456")


class TestRefresh:
    async def _signed_in(self, service):
        return await service.redeem(EMAIL, "123456")

    async def test_refresh_mints_new_access_token(self, make_session_service, clock):
        service = make_session_service()
        tokens = await self._signed_in(service)
        clock.advance(minutes=1)

        refreshed = await service.refresh(tokens.refresh_token)

        assert refreshed.access_token != tokens.access_token
        assert refreshed.refresh_token is None
        assert service.verify(refreshed.access_token)["sub"] == EMAIL
        assert (await service.refresh_tokens.validate(tokens.refresh_token)).valid

    async def test_rotation_replaces_refresh_token(self, make_session_service):
        service = make_session_service(
            settings=Settings(jwt_secret=TEST_SECRET, rotate_refresh_tokens=True)
        )
        tokens = await self._signed_in(service)

        refreshed = await service.refresh(tokens.refresh_token)

        assert refreshed.refresh_token and refreshed.refresh_token != tokens.refresh_token
        with pytest.raises(SessionInvalidError):
            await service.refresh(tokens.refresh_token)
        assert (await service.refresh(refreshed.refresh_token)).identity == EMAIL

    @pytest.mark.parametrize("token,reason", [(None, "invalid_input"), ("f" * 128, "not_found")])
    async def test_invalid_refresh_clears_session(self, make_session_service, token, reason):
        service = make_session_service()

        with pytest.raises(SessionInvalidError) as excinfo:
            await service.refresh(token)

        assert excinfo.value.status_code == 401
        assert excinfo.value.detail == {"reason": reason, "clear_session": True}

    async def test_expired_refresh(self, make_session_service, clock):
        service = make_session_service()
        tokens = await self._signed_in(service)
        clock.advance(days=7)

        with pytest.raises(SessionInvalidError) as excinfo:
            await service.refresh(tokens.refresh_token)

        assert excinfo.value.reason == ErrorKind.EXPIRED


class TestLogout:
    async def test_logout_revokes_one_session(self, make_session_service):
        service = make_session_service()
        laptop = await service.redeem(EMAIL, "123456")
        phone = await service.redeem(EMAIL, "123456")

        assert await service.logout(laptop.refresh_token) is True

        with pytest.raises(SessionInvalidError):
            await service.refresh(laptop.refresh_token)
        assert (await service.refresh(phone.refresh_token)).identity == EMAIL

    async def test_logout_unknown_token_is_harmless(self, make_session_service):
        service = make_session_service()
        assert await service.logout("f" * 128) is False
        assert await service.logout(None) is False

    async def test_logout_all_leaves_other_identities(self, make_session_service):
        service = make_session_service()
        mine = [await service.redeem(EMAIL, "123456") for _ in range(3)]
        theirs = await service.redeem("other@example.com", "123456")

        assert await service.logout_all(EMAIL) == 3

        for tokens in mine:
            assert not (await service.refresh_tokens.validate(tokens.refresh_token)).valid
        assert (await service.refresh(theirs.refresh_token)).identity == "other@example.com"


class TestAuthenticate:
    async def test_cookie_then_header(self, make_session_service):
        service = make_session_service()
        tokens = await service.redeem(EMAIL, "123456")

        assert service.authenticate(tokens.access_token, "Bearer junk")["sub"] == EMAIL
        assert service.authenticate(None, f"Bearer {tokens.access_token}")["sub"] == EMAIL

    def test_missing_token(self, make_session_service):
        service = make_session_service()
        with pytest.raises(AuthenticationError):
            service.authenticate(None, None)
