"""Tests for the cooperative cancellation mechanism."""

from __future__ import annotations

import threading

import pytest

from folio.cancellation import (
    Cancelled,
    cancel_current,
    cancellation_scope,
    check_cancelled,
    clear_token,
    is_cancelled,
    new_token,
)
from folio.errors import FolioError


class TestToken:
    """Basic token lifecycle."""

    def test_new_token_returns_event(self):
        token = new_token()
        assert isinstance(token, threading.Event)
        assert not token.is_set()
        clear_token()

    def test_check_cancelled_no_token(self):
        clear_token()
        check_cancelled()

    def test_check_cancelled_token_not_set(self):
        new_token()
        check_cancelled()
        clear_token()

    def test_check_cancelled_raises_when_set(self):
        token = new_token()
        token.set()
        with pytest.raises(Cancelled, match="not modified"):
            check_cancelled()
        clear_token()

    def test_check_cancelled_includes_context(self):
        token = new_token()
        token.set()
        with pytest.raises(Cancelled, match="tagging p3-img02"):
            check_cancelled("tagging p3-img02")
        clear_token()

    def test_cancelled_is_folio_error(self):
        assert issubclass(Cancelled, FolioError)

    def test_cancel_current_sets_token(self):
        token = new_token()
        assert cancel_current() is True
        assert token.is_set()
        clear_token()

    def test_cancel_current_no_token(self):
        clear_token()
        assert cancel_current() is False

    def test_is_cancelled_reflects_state(self):
        clear_token()
        assert not is_cancelled()
        token = new_token()
        assert not is_cancelled()
        token.set()
        assert is_cancelled()
        clear_token()


class TestScope:
    def test_scope_installs_and_restores(self):
        clear_token()
        with cancellation_scope() as token:
            token.set()
            assert is_cancelled()
        assert not is_cancelled()

    def test_scope_uses_given_token(self):
        token = threading.Event()
        with cancellation_scope(token) as installed:
            assert installed is token
            cancel_current()
        assert token.is_set()

    def test_nested_scopes(self):
        with cancellation_scope() as outer:
            with cancellation_scope() as inner:
                inner.set()
                assert is_cancelled()
            assert not is_cancelled()
            assert not outer.is_set()

    def test_scope_restored_after_exception(self):
        clear_token()
        with pytest.raises(Cancelled):
            with cancellation_scope() as token:
                token.set()
                check_cancelled("detecting page 1")
        assert not is_cancelled()

