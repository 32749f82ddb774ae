"""Tests for the in-memory identity store."""

from datetime import timedelta

import pytest

from kokoru.storage.errors import ConstraintViolation
from kokoru.storage.memory import MemoryStore
from kokoru.storage.models import AuthProvider, Identity, utcnow


@pytest.fixture
def store():
    return MemoryStore(bulk_update_limit=3)


def _local(email="gardener@example.com", **fields):
    return Identity.new(email, password_hash="$argon2id$fake", **fields)


def test_create_and_lookup_case_insensitive(store):
    created = store.create_identity(_local("Gardener@Example.com"))

    assert created.email == "gardener@example.com"
    assert store.get_identity_by_email("GARDENER@example.com").id == created.id
    assert store.get_identity(created.id).email == "gardener@example.com"


def test_duplicate_email_is_a_constraint_violation(store):
    store.create_identity(_local())

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_identity(_local("GARDENER@example.com"))

    assert excinfo.value.detail == {"field": "email"}


def test_duplicate_google_id_is_rejected(store):
    store.create_identity(Identity.new("a@example.com", auth_provider=AuthProvider.GOOGLE, google_id="g-1"))

    with pytest.raises(ConstraintViolation):
        store.create_identity(Identity.new("b@example.com", auth_provider=AuthProvider.GOOGLE, google_id="g-1"))


def test_absent_lookups_return_none(store):
    assert store.get_identity("missing") is None
    assert store.get_identity_by_email("nobody@example.com") is None
    assert store.get_identity_by_google_id("g-404") is None
    assert store.get_identity_by_refresh_token("nope") is None
    assert store.update_identity("missing", first_name="X") is None
    assert store.delete_identity("missing") is False


def test_returned_records_are_copies(store):
    created = store.create_identity(_local())
    created.first_name = "Mutated"

    assert store.get_identity(created.id).first_name == ""


def test_token_lookups_ignore_expired_rows(store):
    now = utcnow()
    live = store.create_identity(
        _local("live@example.com", email_verification_token="hash-live",
               email_verification_expires=now + timedelta(hours=1))
    )
    store.create_identity(
        _local("stale@example.com", password_reset_token="hash-stale",
               password_reset_expires=now - timedelta(minutes=1))
    )

    assert store.get_identity_by_verification_token("hash-live").id == live.id
    assert store.get_identity_by_reset_token("hash-stale") is None


def test_update_stamps_updated_at_and_rejects_unknown_fields(store):
    created = store.create_identity(_local())

    updated = store.update_identity(created.id, first_name="Saburo")

    assert updated.first_name == "Saburo"
    assert updated.updated_at >= created.updated_at
    with pytest.raises(ValueError):
        store.update_identity(created.id, id="other")


def test_login_attempt_counters(store):
    created = store.create_identity(_local())
    until = utcnow() + timedelta(minutes=15)

    assert store.increment_login_attempts(created.id) == 1
    assert store.increment_login_attempts(created.id) == 2
    assert store.lock_identity(created.id, until) is True
    assert store.get_identity(created.id).is_locked()

    assert store.reset_login_attempts(created.id) is True
    reset = store.get_identity(created.id)
    assert reset.login_attempts == 0
    assert reset.locked_until is None


def test_bulk_update_applies_to_existing_ids(store):
    a = store.create_identity(_local("a@example.com"))
    b = store.create_identity(_local("b@example.com"))

    count = store.bulk_update_identities([a.id, b.id, "missing"], is_email_verified=True)

    assert count == 2
    assert store.get_identity(a.id).is_email_verified
    assert store.get_identity(b.id).is_email_verified


def test_bulk_update_is_bounded_and_all_or_nothing(store):
    ids = [store.create_identity(_local(f"u{i}@example.com")).id for i in range(4)]

    with pytest.raises(ValueError):
        store.bulk_update_identities(ids, onboarding_step=2)
    with pytest.raises(ConstraintViolation):
        store.bulk_update_identities(ids[:2], email="same@example.com")

    assert all(store.get_identity(i).onboarding_step == 0 for i in ids)
    assert store.get_identity_by_email("same@example.com") is None


def test_identity_stats(store):
    store.create_identity(_local("a@example.com", is_email_verified=True))
    locked = store.create_identity(_local("b@example.com"))
    store.create_identity(Identity.new("c@example.com", auth_provider=AuthProvider.GOOGLE, is_email_verified=True))
    store.lock_identity(locked.id, utcnow() + timedelta(minutes=5))

    assert store.get_identity_stats() == {
        "total": 3,
        "verified": 2,
        "unverified": 1,
        "google_users": 1,
        "locked_users": 1,
    }
