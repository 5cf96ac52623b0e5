import contextlib
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from latchkey.storage.errors import ConstraintViolation, StaleRecord, StoreUnavailable
from latchkey.storage.models import Account, LinkedIdentity, Provider, TokenKind
from latchkey.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, result):
        self.result = result

    def fetchone(self):
        return self.result

    def fetchall(self):
        return self.result or []


class FakeConnection:
    """Answers each execute() with the next scripted result."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def execute(self, query, params=None):
        self.calls.append((query, params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


class EmailUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="account_email_key")


class IdentityUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="account_identity_provider_provider_id_key")


def _row(**overrides):
    row = {
        "id": "acc-1",
        "email": "jo@example.com",
        "name": "Jo",
        "password_hash": None,
        "active": True,
        "password_changed_at": None,
        "email_changed_at": None,
        "activation_token_digest": None,
        "activation_expires_at": None,
        "reset_token_digest": "abc",
        "reset_expires_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
        "version": 3,
    }
    row.update(overrides)
    return row


def _store(results):
    conn = FakeConnection(results)
    return PostgresStore("postgresql://unused", pool=FakePool(conn)), conn


def test_update_returns_new_version_with_identities():
    store, conn = _store(
        [_row(version=4, name="Joanna"), [{"provider": "google", "provider_id": "g1"}]]
    )

    account = store.update_account("acc-1", {"name": "Joanna"}, expected_version=3)

    assert account.version == 4
    assert account.name == "Joanna"
    assert account.password_hash is None
    assert account.linked_identities == (LinkedIdentity(Provider.GOOGLE, "g1"),)
    assert conn.calls[0][1] == ["Joanna", "acc-1", 3]


def test_update_replaces_identities_when_changed():
    store, conn = _store([_row(version=4), None, None])

    account = store.update_account(
        "acc-1",
        {"linked_identities": [LinkedIdentity(Provider.GITHUB, "gh-1")]},
        expected_version=3,
    )

    assert account.linked_identities == (LinkedIdentity(Provider.GITHUB, "gh-1"),)
    assert conn.calls[1][1] == ("acc-1",)
    assert conn.calls[2][1] == ("acc-1", "github", "gh-1")


def test_update_version_mismatch_is_stale():
    store, _ = _store([None, {"?column?": 1}])

    with pytest.raises(StaleRecord):
        store.update_account("acc-1", {"name": "x"}, expected_version=2)


def test_update_missing_account_is_constraint_violation():
    store, _ = _store([None, None])

    with pytest.raises(ConstraintViolation) as exc_info:
        store.update_account("acc-1", {"name": "x"}, expected_version=2)
    assert exc_info.value.detail == {"account_id": "acc-1"}


def test_unique_violations_are_mapped():
    store, _ = _store([EmailUniqueViolation()])
    with pytest.raises(ConstraintViolation) as exc_info:
        store.update_account("acc-1", {"email": "taken@example.com"}, expected_version=3)
    assert exc_info.value.detail == {"field": "email"}

    store, _ = _store([_row(), IdentityUniqueViolation()])
    with pytest.raises(ConstraintViolation) as exc_info:
        store.update_account(
            "acc-1",
            {"linked_identities": (LinkedIdentity(Provider.GOOGLE, "g1"),)},
            expected_version=3,
        )
    assert exc_info.value.detail == {"field": "provider_id"}


def test_create_account_duplicate_email():
    store, _ = _store([EmailUniqueViolation()])

    with pytest.raises(ConstraintViolation):
        store.create_account(Account.new("jo@example.com", "Jo"))


def test_connection_failure_is_unavailable():
    store = PostgresStore(
        "postgresql://unused", pool=FakePool(error=errors.OperationalError("down"))
    )

    with pytest.raises(StoreUnavailable):
        store.get_account("acc-1")


def test_token_lookup_with_empty_digest_skips_database():
    store = PostgresStore("postgresql://unused", pool=DummyPool())

    assert store.get_account_by_token_digest(TokenKind.RESET, "") is None


def test_lookup_maps_row():
    store, conn = _store([_row(), []])

    account = store.get_account_by_email("  JO@example.com ")

    assert account.id == "acc-1"
    assert account.reset_expires_at == NOW
    assert account.token_digest(TokenKind.RESET) == "abc"
    assert conn.calls[0][1] == ("jo@example.com",)


def test_lookup_miss_returns_none():
    store, _ = _store([None])

    assert store.get_account_by_provider(Provider.GOOGLE, "nope") is None
