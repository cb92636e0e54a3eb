"""Shared fixtures: one in-memory database per test plus episode builders."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from episode_rpc.config import Settings
from episode_rpc.models import (
    CodeableConcept,
    Coding,
    Diagnosis,
    Episode,
    Period,
    Reference,
    StatusHistoryEntry,
)
from episode_rpc.storage import Database, ResourceStore, SequenceStore


OWNER_ORG = "6ce2d4a6-8cfb-4e4f-a8f9-8f0e0e2c2a11"
OTHER_ORG = "1b3a5d2e-4c6f-4a8b-9d0e-2f4a6c8e0b13"


def new_id() -> str:
    return str(uuid.uuid4())


def build_episode(managing_org: str = OWNER_ORG, **overrides) -> Episode:
    opened = datetime.now(timezone.utc) - timedelta(days=30)
    data = {
        "id": new_id(),
        "patient_id": new_id(),
        "name": "Hypertension follow-up",
        "type": Coding(system="eHealth/episode_types", code="primary_care"),
        "period": Period(start=opened),
        "managing_organization": Reference(type="legal_entity", id=managing_org),
        "status_history": [StatusHistoryEntry(status="active", changed_at=opened)],
    }
    data.update(overrides)
    return Episode(**data)


def build_diagnosis(code: str = "I10", role: str = "primary", **overrides) -> Diagnosis:
    data = {
        "condition": Reference(type="condition", id=new_id()),
        "code": CodeableConcept(
            coding=[Coding(system="eHealth/ICD10_AM/condition_codes", code=code)],
        ),
        "role": role,
        "rank": 1,
    }
    data.update(overrides)
    return Diagnosis(**data)


@pytest.fixture
def settings():
    return Settings(store_retry_backoff=0, store_retry_attempts=3, default_page_size=20)


@pytest.fixture
def database():
    db = Database(":memory:")
    yield db
    db.close()


@pytest.fixture
def store(database):
    return ResourceStore(database)


@pytest.fixture
def sequences(database):
    return SequenceStore(database, initial_value=0)


@pytest.fixture
def episode(store):
    return store.create_episode(build_episode())
