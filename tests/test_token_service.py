"""Unit tests for auth/token_service.py -- token issue / check / consume lifecycle.

Covers:
- raw value is never stored; lookup works on the normalized form
- expiry boundary: usable one second before expires_at, TokenExpired at it
- wrong purpose, unknown, empty and consumed tokens all raise TokenNotFound
- second consume of the same token raises TokenNotFound
- sweep removes expired rows
"""

from datetime import timedelta

import pytest

from auth.errors import TokenExpired, TokenNotFound
from auth.models import ACCOUNT_LINK, EMAIL_CONFIRM, PASSWORD_RESET
from auth.token_service import TokenService


def test_issue_stores_only_the_hash(store, tokens, alice):
    token = tokens.issue(PASSWORD_RESET, alice.id, alice.username)
    assert len(token.value) == 40
    stored = store.find_token(token.token_hash)
    assert stored is not None
    assert stored.value is None
    assert stored.token_hash != token.value


def test_check_accepts_surrounding_whitespace_and_case(tokens, alice):
    token = tokens.issue(PASSWORD_RESET, alice.id, alice.username)
    found = tokens.check(f"  {token.value.upper()} \n", purpose=PASSWORD_RESET)
    assert found.id == token.id
    assert found.email == alice.username


def test_expiry_boundary(tokens, clock, alice):
    token = tokens.issue(PASSWORD_RESET, alice.id, alice.username)

    clock.advance(hours=24, seconds=-1)
    assert tokens.check(token.value).id == token.id

    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        tokens.check(token.value)

    # Never reverts to valid.
    clock.advance(days=30)
    with pytest.raises(TokenExpired):
        tokens.check(token.value)


def test_account_link_window_is_shorter(tokens, clock, alice):
    token = tokens.issue(ACCOUNT_LINK, alice.id, alice.username)
    clock.advance(hours=1)
    with pytest.raises(TokenExpired):
        tokens.check(token.value, purpose=ACCOUNT_LINK)


@pytest.mark.parametrize("raw", [None, "", "   ", "0" * 40])
def test_unknown_or_empty_is_not_found(tokens, raw):
    with pytest.raises(TokenNotFound):
        tokens.check(raw)


def test_wrong_purpose_is_not_found(tokens, alice):
    token = tokens.issue(ACCOUNT_LINK, alice.id, alice.username)
    with pytest.raises(TokenNotFound):
        tokens.check(token.value, purpose=PASSWORD_RESET)


def test_consumed_token_is_not_found(tokens, alice):
    token = tokens.issue(PASSWORD_RESET, alice.id, alice.username)
    tokens.consume(tokens.check(token.value))
    with pytest.raises(TokenNotFound):
        tokens.check(token.value)


def test_second_consume_fails(tokens, alice):
    token = tokens.issue(PASSWORD_RESET, alice.id, alice.username)
    first = tokens.check(token.value)
    second = tokens.check(token.value)
    tokens.consume(first)
    with pytest.raises(TokenNotFound):
        tokens.consume(second)


def test_sweep_removes_expired(store, tokens, clock, alice):
    expired = tokens.issue(ACCOUNT_LINK, alice.id, alice.username)
    live = tokens.issue(PASSWORD_RESET, alice.id, alice.username)
    clock.advance(hours=2)
    assert tokens.sweep() == (1, 0)
    assert store.find_token(expired.token_hash) is None
    assert store.find_token(live.token_hash) is not None


def test_unknown_purpose_in_windows_is_rejected(store):
    with pytest.raises(ValueError):
        TokenService(store, {"magic-link": timedelta(minutes=5)})


def test_issue_without_window_is_rejected(store, alice):
    service = TokenService(store, {PASSWORD_RESET: timedelta(hours=1)})
    with pytest.raises(ValueError):
        service.issue(ACCOUNT_LINK, alice.id, alice.username)


def test_email_confirm_has_its_own_window(tokens, clock, alice):
    token = tokens.issue(EMAIL_CONFIRM, alice.id, alice.username)
    clock.advance(hours=23)
    assert tokens.check(token.value, purpose=EMAIL_CONFIRM).purpose == EMAIL_CONFIRM
    clock.advance(hours=1)
    with pytest.raises(TokenExpired):
        tokens.check(token.value, purpose=EMAIL_CONFIRM)
