"""Tests for job handler registration."""

import pytest

import mastery_workers.handlers  # noqa: F401
from mastery_workers.registry import (
    _owns_transaction,
    _registry,
    get_handler,
    owns_transaction,
    register,
    registered_types,
)


@pytest.fixture(autouse=True)
def _clean_registry():
    """Remove test-registered handlers after each test."""
    snapshot = dict(_registry)
    owned = set(_owns_transaction)
    yield
    _registry.clear()
    _registry.update(snapshot)
    _owns_transaction.clear()
    _owns_transaction.update(owned)


def test_recommendation_handlers_are_registered():
    assert "recommendation.assess" in registered_types()
    assert "recommendation.execute" in registered_types()


def test_register_and_lookup():
    @register("test.job")
    async def _handler(conn, payload):
        pass

    assert get_handler("test.job") is _handler
    assert get_handler("unknown.job") is None


def test_duplicate_registration_rejected():
    @register("test.dup")
    async def _first(conn, payload):
        pass

    with pytest.raises(ValueError, match="Duplicate handler"):

        @register("test.dup")
        async def _second(conn, payload):
            pass


def test_assessment_runs_outside_the_job_transaction():
    assert owns_transaction("recommendation.assess") is True
    assert owns_transaction("recommendation.execute") is False


def test_owns_transaction_flag():
    @register("test.long", owns_transaction=True)
    async def _handler(conn, payload):
        pass

    assert owns_transaction("test.long") is True
    assert owns_transaction("unknown.job") is False
