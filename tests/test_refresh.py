"""Tests for opaque refresh tokens."""

import re

import pytest

from otpgate.service.errors import ErrorKind
from otpgate.service.refresh import RefreshTokenService, refresh_token_key


@pytest.fixture
def refresh_service(store, settings, clock):
    return RefreshTokenService(store, settings, clock=clock)


class TestIssue:
    async def test_token_is_512_bits_of_hex(self, refresh_service, clock):
        issued = await refresh_service.issue("a@example.com")

        assert re.fullmatch(r"[0-9a-f]{128}", issued.token)
        assert issued.max_age == 7 * 86400
        assert issued.expires_at == clock.now + refresh_service.ttl

    async def test_raw_token_is_not_stored(self, refresh_service, store):
        issued = await refresh_service.issue("a@example.com")

        assert issued.token not in store.refresh_tokens
        assert refresh_token_key(issued.token) in store.refresh_tokens

    async def test_tokens_are_unique(self, refresh_service):
        tokens = {(await refresh_service.issue("a@example.com")).token for _ in range(20)}
        assert len(tokens) == 20


class TestValidate:
    async def test_valid_token_maps_to_identity(self, refresh_service):
        issued = await refresh_service.issue("a@example.com")
        check = await refresh_service.validate(issued.token)
        assert check.valid
        assert check.identity == "a@example.com"

    async def test_unknown_token(self, refresh_service):
        check = await refresh_service.validate("f" * 128)
        assert check.reason == ErrorKind.NOT_FOUND

    @pytest.mark.parametrize("token", ["", "   ", None])
    async def test_empty_token(self, refresh_service, token):
        assert (await refresh_service.validate(token)).reason == ErrorKind.INVALID_INPUT

    async def test_expired_token_is_removed(self, refresh_service, clock):
        issued = await refresh_service.issue("a@example.com")
        clock.advance(days=7)

        first = await refresh_service.validate(issued.token)
        second = await refresh_service.validate(issued.token)

        assert first.reason == ErrorKind.EXPIRED
        assert second.reason == ErrorKind.NOT_FOUND


class TestInvalidate:
    async def test_invalidate_single_token(self, refresh_service):
        one = await refresh_service.issue("a@example.com")
        two = await refresh_service.issue("a@example.com")

        assert await refresh_service.invalidate(one.token) is True
        assert await refresh_service.invalidate(one.token) is False

        assert not (await refresh_service.validate(one.token)).valid
        assert (await refresh_service.validate(two.token)).valid

    async def test_invalidate_all_is_scoped_to_identity(self, refresh_service):
        a_tokens = [await refresh_service.issue("a@example.com") for _ in range(2)]
        b_tokens = [await refresh_service.issue("b@example.com") for _ in range(2)]

        removed = await refresh_service.invalidate_all("a@example.com")

        assert removed == 2
        for issued in a_tokens:
            assert not (await refresh_service.validate(issued.token)).valid
        for issued in b_tokens:
            assert (await refresh_service.validate(issued.token)).valid

    async def test_invalidate_all_without_tokens(self, refresh_service):
        assert await refresh_service.invalidate_all("nobody@example.com") == 0
