"""Tests for input normalisation and the store gateway's error mapping."""

import time

import pytest

from kokoru.service.errors import DatabaseError, UniqueConstraintError, ValidationError
from kokoru.service.identities import IdentityGateway, normalize_email, validate_identity_id
from kokoru.storage.errors import ConstraintViolation
from kokoru.storage.models import Identity


class FailingStore:
    def __init__(self, exc=None, delay=0.0):
        self.exc = exc
        self.delay = delay
        self.calls = 0

    def get_identity_by_email(self, email):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.exc:
            raise self.exc
        return None


def test_normalize_email():
    assert normalize_email("  Bonsai.Fan+moss@Example.ORG ") == "bonsai.fan+moss@example.org"
    for bad in ("", "no-at-sign", "a@b", "a@b.c", None, 42, "x" * 250 + "@example.com"):
        with pytest.raises(ValidationError):
            normalize_email(bad)


def test_validate_identity_id():
    identity_id = Identity.new("a@example.com").id

    assert validate_identity_id(identity_id) == identity_id
    for bad in ("", "not-a-uuid", None, "6ba7b810-9dad-11d1-80b4-00c04fd430c8"):
        with pytest.raises(ValidationError):
            validate_identity_id(bad)


async def test_constraint_violation_becomes_unique_constraint_error():
    gateway = IdentityGateway(FailingStore(ConstraintViolation("dup", {"field": "email"})), security_delay_ms=(0, 0))

    with pytest.raises(UniqueConstraintError) as excinfo:
        await gateway.call("get_identity_by_email", "a@example.com")

    assert excinfo.value.message == "Email already exists"
    assert excinfo.value.status_code == 409


async def test_timeout_becomes_database_error():
    gateway = IdentityGateway(FailingStore(delay=0.5), timeout_seconds=0.05, security_delay_ms=(0, 0))

    with pytest.raises(DatabaseError) as excinfo:
        await gateway.call("get_identity_by_email", "a@example.com")

    assert excinfo.value.message == "Database operation timed out"


async def test_value_error_becomes_validation_error():
    gateway = IdentityGateway(FailingStore(ValueError("unknown identity fields")), security_delay_ms=(0, 0))

    with pytest.raises(ValidationError):
        await gateway.call("get_identity_by_email", "a@example.com")


async def test_driver_errors_are_generic_in_production():
    failure = RuntimeError("connection to server at 10.0.0.5 failed")
    prod = IdentityGateway(FailingStore(failure), production=True, security_delay_ms=(0, 0))
    dev = IdentityGateway(FailingStore(failure), production=False, security_delay_ms=(0, 0))

    with pytest.raises(DatabaseError) as prod_exc:
        await prod.call("get_identity_by_email", "a@example.com")
    with pytest.raises(DatabaseError) as dev_exc:
        await dev.call("get_identity_by_email", "a@example.com")

    assert prod_exc.value.message == "Database operation failed"
    assert dev_exc.value.message.startswith("Database operation failed:")
    assert dev_exc.value.status_code == 500


async def test_email_lookup_is_padded_on_every_outcome():
    found = IdentityGateway(FailingStore(), security_delay_ms=(30, 30))
    failing = IdentityGateway(FailingStore(RuntimeError("down")), security_delay_ms=(30, 30))

    started = time.perf_counter()
    assert await found.find_by_email("a@example.com") is None
    assert time.perf_counter() - started >= 0.025

    started = time.perf_counter()
    with pytest.raises(DatabaseError):
        await failing.find_by_email("a@example.com")
    assert time.perf_counter() - started >= 0.025
