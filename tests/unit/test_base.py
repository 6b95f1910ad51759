"""Unit tests for identifier parsing and write preparation."""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from dualstore.domain import Team
from dualstore.errors import ValidationFailure
from dualstore.repositories import coerce_id, prepare_write
from dualstore.repositories.base import as_utc


def test_coerce_id_accepts_uuid_and_string():
    """Test that both identifier forms parse to the same UUID."""
    entity_id = uuid4()

    assert coerce_id(entity_id) is entity_id
    assert coerce_id(str(entity_id)) == entity_id
    assert coerce_id(str(entity_id).upper()) == entity_id


@pytest.mark.parametrize("value", ["", "not-a-uuid", "1234", None, 42])
def test_coerce_id_rejects_malformed(value):
    """Test that malformed identifiers are a validation failure."""
    with pytest.raises(ValidationFailure):
        coerce_id(value)


def test_as_utc_treats_naive_as_utc():
    """Test normalisation of naive and offset datetimes."""
    naive = datetime(2026, 3, 1, 12, 0)
    offset = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(naive) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(offset).utcoffset() == timedelta(0)
    assert as_utc(offset) == as_utc(naive)


def test_prepare_new_entity():
    """Test that a new entity gets an id, timestamps and a create precondition."""
    team = Team(name="platform")

    prepared = prepare_write(team)

    assert prepared.is_create
    assert isinstance(prepared.entity_id, UUID)
    assert prepared.entity_id == prepared.entity.id
    assert prepared.entity.created_at == prepared.entity.updated_at
    assert team.id is None


def test_prepare_caller_chosen_id():
    """Test that an id without a marker is still a creation."""
    entity_id = uuid4()

    prepared = prepare_write(Team(id=entity_id, name="imported"))

    assert prepared.is_create
    assert prepared.entity_id == entity_id


def test_prepare_update_expects_read_marker():
    """Test that an update is conditioned on the marker that was read."""
    marker = datetime(2026, 1, 1, tzinfo=timezone.utc)
    team = Team(id=uuid4(), name="platform", created_at=marker, updated_at=marker)

    prepared = prepare_write(team)

    assert not prepared.is_create
    assert prepared.expected_marker == marker
    assert prepared.entity_id == team.id
    assert prepared.entity.updated_at > marker
    assert prepared.entity.created_at == marker


def test_prepare_update_marker_from_the_future():
    """Test that the new marker is greater than the old one even under clock skew."""
    future = datetime.now(tz=timezone.utc) + timedelta(hours=1)
    team = Team(id=uuid4(), name="platform", created_at=future, updated_at=future)

    prepared = prepare_write(team)

    assert prepared.entity.updated_at == future + timedelta(microseconds=1)
