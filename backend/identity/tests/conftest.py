"""Shared fixtures for identity tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from identity.db.connection import Database
from identity.tests.helpers import FakeClock, FakeIdentityVerifier, RecordingMailer, build_service

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "identity.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def identity_verifier() -> FakeIdentityVerifier:
    return FakeIdentityVerifier()


@pytest.fixture
def auth_service(db, clock, mailer, identity_verifier):
    return build_service(db, clock=clock, mailer=mailer, identity_verifier=identity_verifier)
