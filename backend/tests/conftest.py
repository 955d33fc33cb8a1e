from __future__ import annotations

import io

import pytest

from evergreen_core import AuthorizationGate, Caller, DataStore, ImageStore

_STORE_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_LEADERBOARD_TABLE",
    "SUPABASE_RACE_SETTINGS_TABLE",
    "EVERGREEN_DATA_DIR",
    "AUTHORIZED_EMAILS",
)

ADMIN_EMAIL = "admin@example.com"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in _STORE_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def store(tmp_path) -> DataStore:
    return DataStore(data_dir=tmp_path / "data")


@pytest.fixture
def images(tmp_path) -> ImageStore:
    return ImageStore(tmp_path / "public")


@pytest.fixture
def gate() -> AuthorizationGate:
    return AuthorizationGate([ADMIN_EMAIL])


@pytest.fixture
def admin() -> Caller:
    return Caller(id="google-1", email=ADMIN_EMAIL, name="Admin")


@pytest.fixture
def member() -> Caller:
    return Caller(id="google-2", email="fan@example.com", name="Fan")


@pytest.fixture
def store_image(images: ImageStore):
    """Write a small PNG into the image store and return its reference."""

    def _store(field: str, name: str = "pic.png") -> str:
        return images.save(field, name, "image/png", io.BytesIO(PNG_BYTES))

    return _store
