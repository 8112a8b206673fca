import datetime as dt
import os
import pathlib
import sys
import tempfile
from dataclasses import dataclass, field
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="labportal-logs-"))

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from labportal.core.settings import Settings, reset_settings_cache
from labportal.dependencies import reset_dependencies
from labportal.livechat.service import LiveChatService
from labportal.livechat.session_cache import SessionCache
from labportal.agenda.service import ReservationService
from labportal.models import Base, Holiday, Location, Service, Slot, User, UserRole
from labportal.models.session import get_engine
from labportal.security import create_access_token, reset_jwt_settings_cache


@dataclass
class LabContext:
    engine: object
    session_factory: sessionmaker[Session]
    database_url: str
    today: dt.date
    users: dict[str, int]
    tokens: dict[str, str]
    national_ids: dict[str, str]
    services: dict[str, int] = field(default_factory=dict)
    locations: dict[str, int] = field(default_factory=dict)

    def header(self, role: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[role]}"}

    def day(self, offset: int) -> dt.date:
        return self.today + dt.timedelta(days=offset)

    def add_slot(
        self,
        day: dt.date,
        start: str,
        capacity: int = 1,
        *,
        remaining: int | None = None,
        service: str | None = "LAB",
        location: str | None = "MAIN",
        is_active: bool = True,
    ) -> int:
        begin = dt.datetime.strptime(start, "%H:%M")
        with self.session_factory.begin() as session:
            slot = Slot(
                date=day,
                start_time=begin.time(),
                end_time=(begin + dt.timedelta(minutes=30)).time(),
                capacity=capacity,
                remaining_capacity=capacity if remaining is None else remaining,
                is_active=is_active,
                service_id=self.services[service] if service else None,
                location_id=self.locations[location] if location else None,
            )
            session.add(slot)
            session.flush()
            return slot.id

    def add_holiday(self, day: dt.date, description: str, is_active: bool = True) -> None:
        with self.session_factory.begin() as session:
            session.add(Holiday(date=day, description=description, is_active=is_active))

    def add_user(
        self, national_id: str, first_name: str, role: UserRole = UserRole.patient
    ) -> int:
        with self.session_factory.begin() as session:
            user = User(
                national_id=national_id,
                first_name=first_name,
                last_name="Test",
                role=role.value,
            )
            session.add(user)
            session.flush()
            return user.id

    def remaining(self, slot_id: int) -> int:
        with self.session_factory() as session:
            return session.scalar(select(Slot.remaining_capacity).where(Slot.id == slot_id))


_USERS = {
    "patient": ("0102030405", "Ana", "Perez", UserRole.patient, True),
    "patient2": ("0102030406", "Luis", "Mora", UserRole.patient, True),
    "inactive": ("0102030407", "Eva", "Ruiz", UserRole.patient, False),
    "operator": ("0900000001", "Olga", "Vera", UserRole.operator, True),
    "operator2": ("0900000002", "Omar", "Leon", UserRole.operator, True),
    "admin": ("0900000003", "Ada", "Lopez", UserRole.admin, True),
}


@pytest.fixture
def lab_db(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[LabContext]:
    db_path = tmp_path_factory.mktemp("labportal") / "lab.db"
    db_url = f"sqlite+pysqlite:///{db_path}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", "super-secret-key")
    monkeypatch.setenv("ACCESS_TOKEN_ISSUER", "auth.labportal")
    monkeypatch.setenv("ACCESS_TOKEN_AUDIENCE", "labportal")
    monkeypatch.setenv("ACCESS_TOKEN_ALGORITHM", "HS256")
    monkeypatch.setenv("RESERVATION_RATE_LIMIT", "1000/minute")
    reset_jwt_settings_cache()
    reset_settings_cache()

    engine = get_engine(db_url)
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    users: dict[str, int] = {}
    tokens: dict[str, str] = {}
    national_ids: dict[str, str] = {}
    services: dict[str, int] = {}
    locations: dict[str, int] = {}
    with session_factory.begin() as session:
        for code, name in (("LAB", "Clinical Laboratory"), ("IMG", "Imaging")):
            service = Service(code=code, name=name)
            session.add(service)
            session.flush()
            services[code] = service.id
        for code, name in (("MAIN", "Main Location"), ("NORTH", "North Branch")):
            location = Location(code=code, name=name)
            session.add(location)
            session.flush()
            locations[code] = location.id
        for key, (national_id, first, last, role, active) in _USERS.items():
            user = User(
                national_id=national_id,
                first_name=first,
                last_name=last,
                email=f"{key}@lab.example",
                role=role.value,
                is_active=active,
            )
            session.add(user)
            session.flush()
            users[key] = user.id
            national_ids[key] = national_id
            token, _ = create_access_token(user)
            tokens[key] = token

    context = LabContext(
        engine=engine,
        session_factory=session_factory,
        database_url=db_url,
        today=dt.date.today(),
        users=users,
        tokens=tokens,
        national_ids=national_ids,
        services=services,
        locations=locations,
    )

    yield context

    reset_dependencies()
    reset_settings_cache()
    reset_jwt_settings_cache()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def settings(lab_db: LabContext) -> Settings:
    return Settings(database_url=lab_db.database_url)


@pytest.fixture
def reservations(lab_db: LabContext, settings: Settings) -> ReservationService:
    return ReservationService(
        lab_db.session_factory, settings=settings, today=lambda: lab_db.today
    )


@pytest.fixture
def chat(lab_db: LabContext, settings: Settings) -> LiveChatService:
    return LiveChatService(lab_db.session_factory, SessionCache(), settings=settings)


@pytest.fixture
def client(lab_db: LabContext) -> Iterator[TestClient]:
    reset_dependencies()
    import labportal.main as main
    from labportal.core.rate_limit import limiter

    limiter.reset()
    with TestClient(main.app) as test_client:
        yield test_client
    reset_dependencies()
