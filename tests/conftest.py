from datetime import datetime, timezone

import pytest

from app import create_app
from db import LICENSES, SqliteStore
from identity import IdentityProvider, IdentityProviderError
from licensing import LicenseEngine

ADMIN_KEY = "test-admin-key"


class Clock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, *args):
        self.now = datetime(*args, tzinfo=timezone.utc)


class FakeIdentityProvider(IdentityProvider):
    def __init__(self, users=()):
        self.users = set(users)
        self.revoked = []
        self.fail = False

    def user_exists(self, uid):
        if self.fail:
            raise IdentityProviderError("auth down")
        return uid in self.users

    def revoke_sessions(self, uid):
        self.revoked.append(uid)


@pytest.fixture()
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "licenses.db"))
    s.open()
    yield s
    s.close()


@pytest.fixture()
def clock():
    return Clock(datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture()
def engine(store, clock):
    return LicenseEngine(store, clock=clock)


@pytest.fixture()
def provision(store):
    def _provision(key, **fields):
        record = {"active": True}
        record.update(fields)
        store.upsert(LICENSES, key, record)
        return key

    return _provision


@pytest.fixture()
def identity_provider():
    return FakeIdentityProvider(users={"uid-1", "uid-2"})


@pytest.fixture()
def app(store, clock, identity_provider):
    flask_app = create_app(
        store=store,
        identity_provider=identity_provider,
        clock=clock,
        admin_api_key=ADMIN_KEY,
    )
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture()
def client(app):
    return app.test_client()
