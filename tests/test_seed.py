"""Integration-style tests for the seeding helpers."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Iterator

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from labportal.models import Location, Service, Slot, User, UserRole
from seed import (
    SeedConfig,
    _create_schema,
    _load_config,
    _provision_catalog,
    _provision_slots,
    _provision_user,
    _safe_url,
    _slot_times,
)


@dataclass(slots=True)
class SeedTestContext:
    """Holds the resources required to exercise the seed helpers."""

    session_factory: sessionmaker[Session]
    config: SeedConfig


@pytest.fixture()
def seed_test_context(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[SeedTestContext]:
    """Create a temporary SQLite database and ``SeedConfig`` for tests."""

    db_path = tmp_path_factory.mktemp("seed-tests") / "seed.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("SEED_SLOT_DAYS", "7")
    monkeypatch.setenv("SEED_SLOT_CAPACITY", "3")
    monkeypatch.setenv("SEED_SLOT_START", "07:00")
    monkeypatch.setenv("SEED_SLOT_END", "08:00")
    monkeypatch.setenv("SEED_SLOT_MINUTES", "30")
    config = _load_config()
    factory = _create_schema(config.sqlalchemy_url)

    yield SeedTestContext(session_factory=factory, config=config)

    factory.kw["bind"].dispose()


def test_load_config_defaults(seed_test_context: SeedTestContext) -> None:
    config = seed_test_context.config

    assert config.slot_capacity == 3
    assert config.slot_start == dt.time(7, 0)
    assert config.patient_national_id == "0102030405"
    assert config.operator_email == "operator@lab.local"
    assert config.skip_wait is False


def test_provision_catalog_is_idempotent(seed_test_context: SeedTestContext) -> None:
    factory = seed_test_context.session_factory

    first = _provision_catalog(factory)
    second = _provision_catalog(factory)

    assert first == second
    with factory() as session:
        assert session.scalar(select(func.count()).select_from(Service)) == 2
        assert session.scalar(select(func.count()).select_from(Location)) == 2


def test_provision_user_reuses_existing(seed_test_context: SeedTestContext) -> None:
    factory = seed_test_context.session_factory

    operator_id = _provision_user(
        factory, "0900000001", "Demo Operator", UserRole.operator, "operator@lab.local"
    )
    again = _provision_user(factory, "0900000001", "Someone Else", UserRole.operator)

    assert operator_id == again
    with factory() as session:
        user = session.get(User, operator_id)
        assert user.full_name == "Demo Operator"
        assert user.role == "operator"


def test_provision_slots_skips_sundays_and_existing(
    seed_test_context: SeedTestContext,
) -> None:
    factory = seed_test_context.session_factory
    config = seed_test_context.config
    service_ids, location_id = _provision_catalog(factory)
    monday = dt.date(2030, 1, 7)

    created = _provision_slots(factory, config, service_ids, location_id, today=monday)
    again = _provision_slots(factory, config, service_ids, location_id, today=monday)

    # six weekdays, two services, two half-hour slots
    assert created == 6 * 2 * 2
    assert again == 0
    with factory() as session:
        dates = set(session.scalars(select(Slot.date)))
        remaining = set(session.scalars(select(Slot.remaining_capacity)))
    assert dt.date(2030, 1, 13) not in dates
    assert remaining == {3}


def test_slot_times_fit_inside_window() -> None:
    config = SeedConfig(
        db_url="sqlite://",
        sqlalchemy_url="sqlite://",
        patient_national_id="1",
        patient_name="P",
        operator_national_id="2",
        operator_name="O",
        operator_email="o@lab.local",
        slot_days=1,
        slot_capacity=1,
        slot_start=dt.time(7, 0),
        slot_end=dt.time(8, 15),
        slot_minutes=30,
        skip_wait=True,
    )

    assert _slot_times(config) == [
        (dt.time(7, 0), dt.time(7, 30)),
        (dt.time(7, 30), dt.time(8, 0)),
    ]


def test_safe_url_redacts_password() -> None:
    assert _safe_url("postgresql://lab:secret@db:5432/lab") == (
        "postgresql://lab:***@db:5432/lab"
    )
    assert _safe_url("sqlite:///lab.db") == "sqlite:///lab.db"
