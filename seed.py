"""Utility script to bootstrap the database with demo catalog, slots and users."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import time
from dataclasses import dataclass

from dotenv import load_dotenv
import psycopg
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from labportal.models import Base, Location, Service, Slot, User, UserRole
from labportal.models.session import get_engine

logger = logging.getLogger("seed")

DEMO_SERVICES: tuple[tuple[str, str], ...] = (
    ("LAB", "Clinical Laboratory"),
    ("IMG", "Imaging"),
)
DEMO_LOCATIONS: tuple[tuple[str, str], ...] = (
    ("MAIN", "Main Location"),
    ("NORTH", "North Branch"),
)


@dataclass(slots=True)
class SeedConfig:
    """Configuration derived from the environment for the seed process."""

    db_url: str
    sqlalchemy_url: str
    patient_national_id: str
    patient_name: str
    operator_national_id: str
    operator_name: str
    operator_email: str
    slot_days: int
    slot_capacity: int
    slot_start: dt.time
    slot_end: dt.time
    slot_minutes: int
    skip_wait: bool


def _to_bool(value: str | None) -> bool:
    """Parse a truthy string value into ``bool``."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_sqlalchemy_url(db_url: str) -> str:
    """Ensure the SQLAlchemy URL uses the ``psycopg`` driver."""

    if db_url.startswith("postgresql+psycopg://"):
        return db_url
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return db_url


def _safe_url(db_url: str) -> str:
    """Return a version of ``db_url`` with any password redacted."""

    try:
        parsed = make_url(db_url)
    except Exception:  # pragma: no cover - defensive fallback
        return db_url
    if parsed.password is None:
        return db_url
    redacted = parsed.set(password="***")
    return redacted.render_as_string(hide_password=False)


def _build_database_url() -> str:
    """Compute the database URL from ``DATABASE_URL`` or ``PG*`` variables."""

    direct = os.getenv("DATABASE_URL")
    if direct:
        return direct

    host = os.getenv("PGHOST")
    port = os.getenv("PGPORT", "5432")
    database = os.getenv("PGDATABASE")
    user = os.getenv("PGUSER")
    password = os.getenv("PGPASSWORD")

    if not all([host, database, user]):
        raise RuntimeError(
            "DATABASE_URL is not configured and PGHOST/PGDATABASE/PGUSER are missing."
        )

    auth = user
    if password:
        auth = f"{user}:{password}"
    return f"postgresql://{auth}@{host}:{port}/{database}"


def _parse_clock(value: str) -> dt.time:
    return dt.datetime.strptime(value.strip(), "%H:%M").time()


def _load_config() -> SeedConfig:
    """Load seed configuration from environment variables."""

    db_url = _build_database_url()
    return SeedConfig(
        db_url=db_url,
        sqlalchemy_url=_as_sqlalchemy_url(db_url),
        patient_national_id=os.getenv("SEED_PATIENT_NATIONAL_ID", "0102030405").strip(),
        patient_name=os.getenv("SEED_PATIENT_NAME", "Demo Patient").strip(),
        operator_national_id=os.getenv("SEED_OPERATOR_NATIONAL_ID", "0900000001").strip(),
        operator_name=os.getenv("SEED_OPERATOR_NAME", "Demo Operator").strip(),
        operator_email=os.getenv("SEED_OPERATOR_EMAIL", "operator@lab.local").strip().lower(),
        slot_days=int(os.getenv("SEED_SLOT_DAYS", "7")),
        slot_capacity=int(os.getenv("SEED_SLOT_CAPACITY", "5")),
        slot_start=_parse_clock(os.getenv("SEED_SLOT_START", "07:00")),
        slot_end=_parse_clock(os.getenv("SEED_SLOT_END", "11:00")),
        slot_minutes=int(os.getenv("SEED_SLOT_MINUTES", "30")),
        skip_wait=_to_bool(os.getenv("SEED_SKIP_WAIT")),
    )


def wait_for_database(max_attempts: int = 10, delay: float = 3.0) -> None:
    """Attempt to establish a database connection, retrying if necessary.

    Only PostgreSQL URLs are polled; SQLite files need no readiness check.
    """

    db_url = _build_database_url()
    if not db_url.startswith("postgresql"):
        return
    db_url = db_url.replace("postgresql+psycopg://", "postgresql://", 1)
    safe_url = _safe_url(db_url)

    for attempt in range(1, max_attempts + 1):
        try:
            with psycopg.connect(db_url, connect_timeout=5) as connection:
                with connection.cursor() as cursor:
                    cursor.execute("SELECT 1")
        except Exception as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue

        logger.info("Database connection established after %d attempt(s): %s", attempt, safe_url)
        return


def _create_schema(sqlalchemy_url: str) -> sessionmaker[Session]:
    """Create missing tables and return a session factory bound to them."""

    engine = get_engine(sqlalchemy_url)
    Base.metadata.create_all(engine)
    logger.info("Schema ensured successfully.")
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def _split_name(full_name: str) -> tuple[str, str]:
    first, _, last = full_name.partition(" ")
    return first, last


def _provision_catalog(factory: sessionmaker[Session]) -> tuple[list[int], int]:
    """Create or reuse demo services and locations.

    Returns the service ids and the id of the main location.
    """

    with factory.begin() as session:
        service_ids: list[int] = []
        for code, name in DEMO_SERVICES:
            service = session.execute(
                select(Service).where(Service.code == code)
            ).scalar_one_or_none()
            if service is None:
                service = Service(code=code, name=name)
                session.add(service)
                session.flush()
                logger.info("Created service %s", code)
            service_ids.append(service.id)

        location_ids: dict[str, int] = {}
        for code, name in DEMO_LOCATIONS:
            location = session.execute(
                select(Location).where(Location.code == code)
            ).scalar_one_or_none()
            if location is None:
                location = Location(code=code, name=name)
                session.add(location)
                session.flush()
                logger.info("Created location %s", code)
            location_ids[code] = location.id

    return service_ids, location_ids["MAIN"]


def _provision_user(
    factory: sessionmaker[Session],
    national_id: str,
    full_name: str,
    role: UserRole,
    email: str | None = None,
) -> int:
    """Create or reuse a user identified by ``national_id``."""

    with factory.begin() as session:
        user = session.execute(
            select(User).where(User.national_id == national_id)
        ).scalar_one_or_none()
        if user is None:
            first_name, last_name = _split_name(full_name)
            user = User(
                national_id=national_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                role=role.value,
            )
            session.add(user)
            session.flush()
            logger.info("Created %s user %s", role.value, user.id)
        else:
            logger.info("%s user %s already exists; reusing.", role.value.title(), user.id)
        return user.id


def _slot_times(config: SeedConfig) -> list[tuple[dt.time, dt.time]]:
    step = dt.timedelta(minutes=config.slot_minutes)
    anchor = dt.date(2000, 1, 1)
    cursor = dt.datetime.combine(anchor, config.slot_start)
    end = dt.datetime.combine(anchor, config.slot_end)
    times = []
    while cursor + step <= end:
        times.append((cursor.time(), (cursor + step).time()))
        cursor += step
    return times


def _provision_slots(
    factory: sessionmaker[Session],
    config: SeedConfig,
    service_ids: list[int],
    location_id: int,
    today: dt.date | None = None,
) -> int:
    """Create demo slots for the coming days, skipping Sundays.

    Existing slots (same date, start, service and location) are left as they
    are so re-running the seed never resets booked capacity.
    """

    start = today or dt.date.today()
    created = 0
    with factory.begin() as session:
        for offset in range(config.slot_days):
            day = start + dt.timedelta(days=offset)
            if day.weekday() == 6:
                continue
            for service_id in service_ids:
                for begin, finish in _slot_times(config):
                    exists = session.execute(
                        select(Slot.id).where(
                            Slot.date == day,
                            Slot.start_time == begin,
                            Slot.service_id == service_id,
                            Slot.location_id == location_id,
                        )
                    ).first()
                    if exists is not None:
                        continue
                    session.add(
                        Slot(
                            date=day,
                            start_time=begin,
                            end_time=finish,
                            capacity=config.slot_capacity,
                            remaining_capacity=config.slot_capacity,
                            service_id=service_id,
                            location_id=location_id,
                        )
                    )
                    created += 1
    logger.info("Created %d demo slot(s)", created)
    return created


async def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = _load_config()
    if not config.skip_wait:
        wait_for_database()

    logger.info("Starting seed process using %s", _safe_url(config.db_url))

    factory = await asyncio.to_thread(_create_schema, config.sqlalchemy_url)
    service_ids, location_id = await asyncio.to_thread(_provision_catalog, factory)
    patient_id = await asyncio.to_thread(
        _provision_user,
        factory,
        config.patient_national_id,
        config.patient_name,
        UserRole.patient,
    )
    operator_id = await asyncio.to_thread(
        _provision_user,
        factory,
        config.operator_national_id,
        config.operator_name,
        UserRole.operator,
        config.operator_email,
    )
    await asyncio.to_thread(_provision_slots, factory, config, service_ids, location_id)

    logger.info(
        "Seed process completed. Patient ID: %s, operator ID: %s", patient_id, operator_id
    )


if __name__ == "__main__":
    asyncio.run(main())
