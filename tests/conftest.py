import os
import tempfile

# module-level engine and settings are built on import
_DB_DIR = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/app.db"
os.environ["RUN_MIGRATIONS"] = "false"
os.environ["SWEEP_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from dispatch.core_settings import Settings
from dispatch.infrastructure.db import build_engine, init_models
from dispatch.application.actors import Actor, Role
from dispatch.application.coordinator import DispatchCoordinator
from dispatch.application.state_machine import OrderStateMachine
from helpers import FakeClock, FakePrescriptions, PHARMACY_ID

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path}/dispatch.db")
    init_models(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture
def prescriptions():
    return FakePrescriptions(**{"rx-ok": "processed", "rx-pending": "pending"})

@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite://", RUN_MIGRATIONS=False, SWEEP_ENABLED=False)

@pytest.fixture
def coordinator(session_factory, settings, prescriptions, clock):
    return DispatchCoordinator(session_factory, settings, prescriptions=prescriptions, clock=clock)

@pytest.fixture
def machine(db, prescriptions, clock):
    return OrderStateMachine(db, prescriptions=prescriptions, clock=clock)

@pytest.fixture
def patient():
    return Actor("patient-1", Role.PATIENT)

@pytest.fixture
def pharmacist():
    return Actor("pharmacist-1", Role.PHARMACIST, pharmacy_id=PHARMACY_ID)

@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)
