"""Shared fixtures for api tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from starlette.testclient import TestClient

from api.server.app import create_app
from api.server.settings import ApiServerSettings
from identity.auth.settings import AuthSettings, MailSettings
from identity.tests.helpers import TEST_JWT_SECRET, FakeClock, FakeIdentityVerifier, RecordingMailer

if TYPE_CHECKING:
    from pathlib import Path


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
def server_settings() -> ApiServerSettings:
    return ApiServerSettings(cors_origins=["https://app.reelio.test"])


@pytest.fixture
def client(tmp_path: Path, server_settings, clock, mailer, identity_verifier):
    app = create_app(
        server_settings,
        AuthSettings(jwt_secret=TEST_JWT_SECRET, database_path=str(tmp_path / "api.db"), password_hasher="simple"),
        MailSettings(backend="console"),
        mailer=mailer,
        identity_verifier=identity_verifier,
        clock=clock,
    )
    with TestClient(app) as test_client:
        yield test_client
