import os

import pytest

pytest_plugins = ["rls_harness.pytest_plugin"]

DATA_DIR = os.path.join(os.path.dirname(__file__), "data")
MODULE_DIR = os.path.join(DATA_DIR, "modules", "rls_test")

U1 = "550e8400-e29b-41d4-a716-446655440001"
U2 = "550e8400-e29b-41d4-a716-446655440002"

USERS = [
    {"id": U1, "email": "alice@example.com"},
    {"id": U2, "email": "bob@example.com"},
]

PETS = [
    {"id": "660e8400-e29b-41d4-a716-446655440001", "name": "Fido",
     "breed": "Labrador", "user_id": U1},
    # no breed key: inserted as NULL
    {"id": "660e8400-e29b-41d4-a716-446655440002", "name": "Buddy",
     "user_id": U2},
]


@pytest.fixture(scope="session")
def data_dir():
    return DATA_DIR


@pytest.fixture(scope="session")
def module_dir():
    return MODULE_DIR
