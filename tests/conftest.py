import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from repositories import Repositories
from schemas import Identity, Profile
from storage import LocalFileStorage


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient().pickup_test
    database.ensure_indexes(mock_db)
    return mock_db


@pytest.fixture
def repos(db):
    return Repositories(db)


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorage(str(tmp_path), "/files")


def make_identity(repos, role, name):
    profile = repos.profiles.create(
        Profile(role=role, name=name, email=f"{name.lower()}@example.com", address="1 Main St"),
        password_hash="not-a-real-hash",
    )
    return Identity(id=profile.id, role=role, email=profile.email)


@pytest.fixture
def citizen(repos):
    return make_identity(repos, "citizen", "Asha")


@pytest.fixture
def other_citizen(repos):
    return make_identity(repos, "citizen", "Ben")


@pytest.fixture
def vendor(repos):
    identity = make_identity(repos, "vendor", "Ravi")
    repos.vendor_rates.upsert(identity.id, "plastic", 5.0)
    return identity


@pytest.fixture
def other_vendor(repos):
    return make_identity(repos, "vendor", "Meena")


@pytest.fixture
def client(db, storage):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
