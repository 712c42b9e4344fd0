"""Tests for nonce issuance and consumption."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from nonce_utility.core.errors import (
    DuplicateNonceError,
    NonceAlreadyConsumedError,
    NonceError,
    NonceExpiredError,
    NonceGenerationExhaustedError,
    NonceNotFoundError,
    NonceStorageError,
)
from nonce_utility.core.settings import settings
from nonce_utility.core.tokens import TokenGenerator
from nonce_utility.repositories.sql_repo import SqlNonceRepository
from nonce_utility.services.nonce_service import NonceService
from nonce_utility.services.request_context import StaticRequestContext
from tests.conftest import FrozenClock, Owner


class ScriptedGenerator(TokenGenerator):
    """Yield a fixed sequence of tokens."""

    def __init__(self, *tokens: str) -> None:
        super().__init__()
        self._tokens = iter(tokens)
        self.calls = 0

    def generate(self, length: int) -> str:
        self.calls += 1
        return next(self._tokens)


# --- Issuance -------------------------------------------------------------------------


def test_create_signup_scenario(nonce_service: NonceService, owner: Owner) -> None:
    record = nonce_service.create(owner, namespace="signup", expires_in=timedelta(minutes=10), length=8)

    assert len(record.nonce) == 8
    assert record.owner_id == owner.id
    assert record.namespace == "signup"
    assert record.expires_at == record.created_at + timedelta(minutes=10)
    assert record.consumed_at is None

    consumed = nonce_service.consume(owner, record.nonce, "signup")
    assert consumed.consumed_at is not None

    with pytest.raises(NonceAlreadyConsumedError):
        nonce_service.consume(owner, record.nonce, "signup")


def test_create_defaults(nonce_service: NonceService, owner: Owner) -> None:
    record = nonce_service.create(owner)

    assert len(record.nonce) == 10
    assert record.namespace == "default"
    assert record.expires_at is None
    assert record.id is not None


def test_create_unassociated_has_no_owner(nonce_service: NonceService,
                                          repository: SqlNonceRepository) -> None:
    record = nonce_service.create_unassociated()

    assert record.owner_id is None
    assert repository.has_unassociated(record.nonce, "default") is True


def test_create_requires_owner(nonce_service: NonceService) -> None:
    with pytest.raises(ValueError):
        nonce_service.create(None)  # type: ignore[arg-type]


def test_create_rejects_negative_expiry(nonce_service: NonceService, owner: Owner) -> None:
    with pytest.raises(ValueError):
        nonce_service.create(owner, expires_in=timedelta(seconds=-1))


def test_create_never_repeats_within_scope(nonce_service: NonceService, owner: Owner) -> None:
    tokens = {nonce_service.create(owner, namespace="forms", length=4).nonce for _ in range(50)}
    assert len(tokens) == 50


def test_create_retries_on_collision(repository: SqlNonceRepository, owner: Owner) -> None:
    NonceService(repository, ScriptedGenerator("taken")).create(owner)
    generator = ScriptedGenerator("taken", "taken", "fresh")

    record = NonceService(repository, generator).create(owner)

    assert record.nonce == "fresh"
    assert generator.calls == 3


def test_collision_is_scoped_to_owner(repository: SqlNonceRepository, owner: Owner,
                                      other_owner: Owner) -> None:
    NonceService(repository, ScriptedGenerator("shared")).create(owner)
    generator = ScriptedGenerator("shared")

    record = NonceService(repository, generator).create(other_owner)

    assert record.nonce == "shared"
    assert generator.calls == 1


def test_same_token_may_exist_in_other_namespace(repository: SqlNonceRepository) -> None:
    NonceService(repository, ScriptedGenerator("shared")).create_unassociated(namespace="a")
    record = NonceService(repository, ScriptedGenerator("shared")).create_unassociated(namespace="b")
    assert record.namespace == "b"


def test_generation_is_capped(repository: SqlNonceRepository, owner: Owner) -> None:
    NonceService(repository, ScriptedGenerator("taken")).create(owner)
    service = NonceService(repository, ScriptedGenerator(*["taken"] * 3), max_attempts=3)

    with pytest.raises(NonceGenerationExhaustedError) as exc_info:
        service.create(owner)
    assert exc_info.value.attempts == 3
    assert exc_info.value.namespace == "default"


def test_insert_race_counts_as_collision(owner: Owner) -> None:
    repository = MagicMock()
    repository.has.return_value = False
    repository.add.side_effect = [DuplicateNonceError(), None]
    generator = ScriptedGenerator("first", "second")

    record = NonceService(repository, generator).create(owner)

    assert record.nonce == "second"
    assert repository.add.call_count == 2


def test_storage_failure_on_create_propagates(owner: Owner) -> None:
    repository = MagicMock()
    repository.has.return_value = False
    repository.add.side_effect = NonceStorageError()

    with pytest.raises(NonceStorageError):
        NonceService(repository).create(owner)
    assert repository.add.call_count == 1


# --- Consumption ----------------------------------------------------------------------


def test_consume_unknown_nonce(nonce_service: NonceService, owner: Owner) -> None:
    with pytest.raises(NonceNotFoundError) as exc_info:
        nonce_service.consume(owner, "does-not-exist", "signup")
    assert exc_info.value.nonce == "does-not-exist"
    assert exc_info.value.namespace == "signup"


def test_consume_checks_owner_and_namespace(nonce_service: NonceService, owner: Owner,
                                            other_owner: Owner) -> None:
    record = nonce_service.create(owner, namespace="signup")

    with pytest.raises(NonceNotFoundError):
        nonce_service.consume(other_owner, record.nonce, "signup")
    with pytest.raises(NonceNotFoundError):
        nonce_service.consume(owner, record.nonce, "default")
    with pytest.raises(NonceNotFoundError):
        nonce_service.consume_unassociated(record.nonce, "signup")


def test_consume_sets_consumed_at(frozen_service: NonceService, clock: FrozenClock,
                                  owner: Owner) -> None:
    record = frozen_service.create(owner)
    clock.advance(timedelta(seconds=30))

    consumed = frozen_service.consume(owner, record.nonce)

    assert consumed.consumed_at == clock.now
    assert consumed.consumed_at >= consumed.created_at
    assert consumed.http_user_agent is None
    assert consumed.ip_address is None


def test_consume_stores_request_metadata(nonce_service: NonceService, owner: Owner) -> None:
    record = nonce_service.create(owner)
    context = StaticRequestContext(user_agent="TestBot/1.0", ip_address="203.0.113.5")

    consumed = nonce_service.consume(owner, record.nonce, request=context)

    assert consumed.consumed_at >= consumed.created_at
    assert consumed.http_user_agent == "TestBot/1.0"
    assert consumed.ip_address == "203.0.113.5"


def test_consume_expired(frozen_service: NonceService, clock: FrozenClock, owner: Owner) -> None:
    record = frozen_service.create(owner, expires_in=timedelta(minutes=5))
    clock.advance(timedelta(minutes=5, seconds=1))

    with pytest.raises(NonceExpiredError):
        frozen_service.consume(owner, record.nonce)
    assert record.consumed_at is None


def test_consume_at_exact_expiry_succeeds(frozen_service: NonceService, clock: FrozenClock,
                                          owner: Owner) -> None:
    record = frozen_service.create(owner, expires_in=timedelta(minutes=5))
    clock.advance(timedelta(minutes=5))

    assert frozen_service.consume(owner, record.nonce).consumed_at == clock.now


def test_already_consumed_wins_over_expired(frozen_service: NonceService, clock: FrozenClock,
                                            owner: Owner) -> None:
    record = frozen_service.create(owner, expires_in=timedelta(minutes=5))
    frozen_service.consume(owner, record.nonce)
    clock.advance(timedelta(hours=1))

    with pytest.raises(NonceAlreadyConsumedError):
        frozen_service.consume(owner, record.nonce)


def test_unassociated_expiry_scenario(nonce_service: NonceService) -> None:
    record = nonce_service.create_unassociated(namespace="default", expires_in=timedelta(seconds=1))
    time.sleep(1.1)

    with pytest.raises(NonceExpiredError):
        nonce_service.consume_unassociated(record.nonce, "default")


def test_consume_unassociated(nonce_service: NonceService) -> None:
    record = nonce_service.create_unassociated(namespace="confirm")

    consumed = nonce_service.consume_unassociated(record.nonce, "confirm")

    assert consumed.consumed_at is not None
    with pytest.raises(NonceAlreadyConsumedError):
        nonce_service.consume_unassociated(record.nonce, "confirm")


def test_lost_race_reports_already_consumed(nonce_service: NonceService, owner: Owner) -> None:
    record = nonce_service.create(owner)
    repository = MagicMock()
    repository.get.return_value = record
    repository.mark_consumed.return_value = False

    with pytest.raises(NonceAlreadyConsumedError):
        NonceService(repository).consume(owner, record.nonce)
    assert record.consumed_at is None


def test_stale_read_cannot_consume_twice(session_factory, repository: SqlNonceRepository,
                                         owner: Owner) -> None:
    first = NonceService(repository)
    record = first.create(owner)
    # Load the record into the first session before the competing consumer runs.
    assert repository.get(owner, record.nonce, "default").consumed_at is None

    second_session = session_factory()
    try:
        NonceService(SqlNonceRepository(second_session)).consume(owner, record.nonce)
    finally:
        second_session.close()

    with pytest.raises(NonceAlreadyConsumedError):
        first.consume(owner, record.nonce)


def test_storage_failure_on_consume_propagates(nonce_service: NonceService, owner: Owner) -> None:
    record = nonce_service.create(owner)
    repository = MagicMock()
    repository.get.return_value = record
    repository.mark_consumed.side_effect = NonceStorageError()

    with pytest.raises(NonceStorageError):
        NonceService(repository).consume(owner, record.nonce)
    assert record.consumed_at is None


def test_errors_share_a_base_class() -> None:
    for error in (NonceNotFoundError, NonceAlreadyConsumedError, NonceExpiredError,
                  NonceGenerationExhaustedError, NonceStorageError):
        assert issubclass(error, NonceError)
    assert str(NonceExpiredError()) == "Nonce has expired"


# --- Configuration --------------------------------------------------------------------


def test_defaults_come_from_settings(nonce_service: NonceService, owner: Owner,
                                     monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "default_namespace", "checkout")
    monkeypatch.setattr(settings, "default_length", 16)

    record = nonce_service.create(owner)
    unassociated = nonce_service.create_unassociated()

    assert record.namespace == "checkout"
    assert len(record.nonce) == 16
    assert unassociated.namespace == "checkout"
    assert nonce_service.consume(owner, record.nonce).namespace == "checkout"
    assert nonce_service.consume_unassociated(unassociated.nonce).consumed_at is not None


def test_explicit_arguments_override_settings(nonce_service: NonceService, owner: Owner,
                                              monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "default_namespace", "checkout")

    record = nonce_service.create(owner, namespace="signup", length=6)

    assert record.namespace == "signup"
    assert len(record.nonce) == 6


def test_max_attempts_defaults_to_settings(repository: SqlNonceRepository,
                                           monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "max_generation_attempts", 4)
    assert NonceService(repository).max_attempts == 4
    assert NonceService(repository, max_attempts=2).max_attempts == 2


@pytest.mark.parametrize("attempts", [0, -3])
def test_max_attempts_must_be_positive(repository: SqlNonceRepository, attempts: int) -> None:
    with pytest.raises(ValueError):
        NonceService(repository, max_attempts=attempts)


def test_issue_log_names_the_scope(nonce_service: NonceService, owner: Owner,
                                   caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="nonce_utility.services.nonce_service")

    nonce_service.create(owner)
    nonce_service.create_unassociated()

    messages = [record.getMessage() for record in caplog.records]
    assert "Issued owned nonce in namespace default" in messages
    assert "Issued unassociated nonce in namespace default" in messages
