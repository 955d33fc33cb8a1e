from __future__ import annotations

import datetime as dt
import logging
from typing import Optional
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from app import main as main_module
from app.oauth import OAuthError, ProviderUnavailable
from evergreen_core import (
    AuthorizationGate,
    Caller,
    DataStore,
    FixedClock,
    ImageStore,
    LeaderboardService,
    RaceSettingsService,
    StoreError,
)
from evergreen_core.images import CIRCUIT_FIELD, PROFILE_FIELD

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"
UTC = dt.timezone.utc


class _FakeOAuth:
    """Google stand-in keyed on the access token it is given."""

    def __init__(self, users: dict) -> None:
        self.users = users
        self.exchanged: list = []

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        return f"https://accounts.example.test/auth?redirect_uri={redirect_uri}&state={state}"

    def exchange_code(self, code: str, redirect_uri: str) -> str:
        self.exchanged.append((code, redirect_uri))
        if code == "bad-code":
            raise OAuthError("Google rejected the authorization code")
        if code == "provider-down":
            raise ProviderUnavailable("Google token endpoint returned an unreadable response")
        return f"token-for-{code}"

    def fetch_user(self, access_token: str) -> Caller:
        if access_token == "provider-down":
            raise ProviderUnavailable("Failed to verify authentication token")
        user = self.users.get(access_token)
        if user is None:
            raise OAuthError("Invalid authentication token")
        return user


class _BrokenStore(DataStore):
    def fetch_leaderboard(self):
        raise StoreError("Failed to fetch leaderboard: connection refused")

    def fetch_race_settings(self):
        raise StoreError("Failed to fetch race settings: connection refused")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(dt.datetime(2024, 5, 20, 12, 0, tzinfo=UTC))


@pytest.fixture
def client(store: DataStore, images: ImageStore, gate: AuthorizationGate, clock: FixedClock):
    overrides = main_module.app.dependency_overrides
    overrides[main_module.get_image_store] = lambda: images
    overrides[main_module.get_gate] = lambda: gate
    overrides[main_module.get_race_settings_service] = lambda: RaceSettingsService(store, images, gate, clock)
    overrides[main_module.get_leaderboard_service] = lambda: LeaderboardService(store, images, gate)
    yield TestClient(main_module.app)
    overrides.clear()


@pytest.fixture
def login():
    def _login(caller: Optional[Caller]) -> None:
        main_module.app.dependency_overrides[main_module.current_caller] = lambda: caller

    return _login


@pytest.fixture
def fake_google(monkeypatch: pytest.MonkeyPatch, admin: Caller, member: Caller) -> _FakeOAuth:
    fake = _FakeOAuth({"admin-token": admin, "member-token": member, "token-for-good-code": admin})
    monkeypatch.setattr(main_module, "oauth_client", lambda: fake)
    monkeypatch.setattr(main_module.config, "google_client_id", "client-id")
    monkeypatch.setattr(main_module.config, "google_client_secret", "client-secret")
    return fake


def _uploaded_files(images: ImageStore) -> list:
    if not images.uploads_dir.exists():
        return []
    return [path for path in images.uploads_dir.rglob("*") if path.is_file()]


# ---- service endpoints -------------------------------------------------------------


def test_root_and_health(client: TestClient) -> None:
    assert client.get("/").json() == {"message": "Formula Evergreen Championship API"}
    assert client.get("/health").json() == {"status": "ok"}


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


# ---- leaderboard -------------------------------------------------------------------


def test_leaderboard_crud_as_admin(client: TestClient, login, admin: Caller) -> None:
    login(admin)

    for name, points in (("A", 50), ("B", 100), ("C", 75)):
        response = client.post("/leaderboard", json={"driverName": name, "points": points})
        assert response.status_code == 201

    body = client.get("/leaderboard").json()
    assert [(row["driverName"], row["points"]) for row in body] == [("B", 100), ("C", 75), ("A", 50)]
    assert set(body[0]) == {"id", "driverName", "points", "profilePicture", "createdAt", "updatedAt"}

    entry_id = body[2]["id"]
    updated = client.put(f"/leaderboard/{entry_id}", json={"driverName": "A", "points": 120})
    assert updated.status_code == 200
    assert client.get("/leaderboard").json()[0]["driverName"] == "A"

    deleted = client.delete(f"/leaderboard/{entry_id}")
    assert deleted.json() == {"message": "Leaderboard entry deleted successfully"}
    assert len(client.get("/leaderboard").json()) == 2


def test_leaderboard_is_public(client: TestClient, login, admin: Caller) -> None:
    login(admin)
    client.post("/leaderboard", json={"driverName": "Alice", "points": 1})
    login(None)

    assert client.get("/leaderboard").status_code == 200


@pytest.mark.parametrize(
    "caller_fixture, status",
    [(None, 401), ("member", 403)],
)
def test_leaderboard_mutations_are_gated(client: TestClient, login, request, caller_fixture, status) -> None:
    login(request.getfixturevalue(caller_fixture) if caller_fixture else None)

    assert client.post("/leaderboard", json={"driverName": "Bob", "points": 1}).status_code == status
    assert client.put("/leaderboard/1", json={"driverName": "Bob", "points": 1}).status_code == status
    assert client.delete("/leaderboard/1").status_code == status
    assert client.delete("/leaderboard/1/profile-picture").status_code == status


def test_denied_message(client: TestClient, login, member: Caller) -> None:
    login(member)
    response = client.post("/leaderboard", json={"driverName": "Bob", "points": 1})
    assert response.json()["detail"] == "Access denied. You are not authorized to perform this action."


@pytest.mark.parametrize(
    "payload",
    [
        {"driverName": "", "points": 10},
        {"points": 10},
        {"driverName": "Bob"},
        {"driverName": "Bob", "points": -5},
        {"driverName": "Bob", "points": "lots"},
    ],
)
def test_invalid_entries_are_rejected(client: TestClient, login, admin: Caller, payload) -> None:
    login(admin)
    assert client.post("/leaderboard", json=payload).status_code == 400


def test_missing_entry_is_404(client: TestClient, login, admin: Caller) -> None:
    login(admin)
    assert client.put("/leaderboard/99", json={"driverName": "Ghost", "points": 1}).status_code == 404
    assert client.delete("/leaderboard/99").status_code == 404
    assert client.delete("/leaderboard/99/profile-picture").status_code == 404


def test_store_failure_is_generic_500(client: TestClient, images, gate, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(main_module.config, "app_env", "production")
    broken = _BrokenStore(data_dir=tmp_path / "broken")
    main_module.app.dependency_overrides[main_module.get_leaderboard_service] = lambda: LeaderboardService(
        broken, images, gate
    )
    main_module.app.dependency_overrides[main_module.get_race_settings_service] = lambda: RaceSettingsService(
        broken, images, gate
    )

    leaderboard = client.get("/leaderboard")
    settings = client.get("/race-settings")

    assert (leaderboard.status_code, leaderboard.json()) == (500, {"detail": "Error fetching leaderboards"})
    assert (settings.status_code, settings.json()) == (500, {"detail": "Error fetching race settings"})


def test_store_failure_detail_in_development(client: TestClient, images, gate, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(main_module.config, "app_env", "development")
    broken = _BrokenStore(data_dir=tmp_path / "broken")
    main_module.app.dependency_overrides[main_module.get_leaderboard_service] = lambda: LeaderboardService(
        broken, images, gate
    )

    detail = client.get("/leaderboard").json()["detail"]

    assert detail.startswith("Error fetching leaderboards: ")
    assert "connection refused" in detail


# ---- profile pictures --------------------------------------------------------------


def test_profile_picture_upload_and_delete(client: TestClient, login, admin: Caller, images: ImageStore) -> None:
    login(admin)
    entry_id = client.post("/leaderboard", json={"driverName": "Alice", "points": 1}).json()["id"]

    response = client.post(
        f"/leaderboard/{entry_id}/profile-picture",
        files={PROFILE_FIELD: ("alice.png", PNG_BYTES, "image/png")},
    )

    assert response.status_code == 200
    reference = response.json()["profilePicture"]
    assert response.json()["message"] == "Profile picture uploaded successfully"
    assert reference.startswith("/uploads/profilePicture-")
    assert client.get("/leaderboard").json()[0]["profilePicture"] == reference

    deleted = client.delete(f"/leaderboard/{entry_id}/profile-picture")
    assert deleted.json() == {"message": "Profile picture deleted successfully"}
    assert not images.path_for(reference).exists()


def test_profile_picture_for_missing_driver_leaves_no_file(
    client: TestClient, login, admin: Caller, images: ImageStore
) -> None:
    login(admin)

    response = client.post("/leaderboard/99/profile-picture", files={PROFILE_FIELD: ("x.png", PNG_BYTES, "image/png")})

    assert response.status_code == 404
    assert _uploaded_files(images) == []


def test_profile_picture_needs_admin_before_storing(
    client: TestClient, login, member: Caller, images: ImageStore
) -> None:
    login(member)

    response = client.post("/leaderboard/1/profile-picture", files={PROFILE_FIELD: ("x.png", PNG_BYTES, "image/png")})

    assert response.status_code == 403
    assert _uploaded_files(images) == []


def test_profile_picture_requires_image(client: TestClient, login, admin: Caller) -> None:
    login(admin)
    entry_id = client.post("/leaderboard", json={"driverName": "Alice", "points": 1}).json()["id"]

    no_file = client.post(f"/leaderboard/{entry_id}/profile-picture")
    not_image = client.post(
        f"/leaderboard/{entry_id}/profile-picture",
        files={PROFILE_FIELD: ("notes.txt", b"hello", "text/plain")},
    )

    assert (no_file.status_code, no_file.json()["detail"]) == (400, "No file uploaded")
    assert (not_image.status_code, not_image.json()["detail"]) == (400, "Only image files are allowed!")


# ---- race settings -----------------------------------------------------------------


def test_race_settings_are_public_and_created_on_first_read(client: TestClient) -> None:
    response = client.get("/race-settings")

    assert response.status_code == 200
    body = response.json()
    assert body["nextRaceLocation"] is None
    assert body["nextRaceDate"] is None
    assert body["circuitImage"] is None


def test_update_race_settings_any_logged_in_user(client: TestClient, login, member: Caller) -> None:
    login(member)

    response = client.put(
        "/race-settings",
        json={"nextRaceLocation": "Monaco", "nextRaceDate": "2024-05-26T07:00", "raceDescription": "GP desc"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["nextRaceLocation"] == "Monaco"
    assert body["raceDescription"] == "GP desc"
    assert dt.datetime.fromisoformat(body["nextRaceDate"].replace("Z", "+00:00")) == dt.datetime(
        2024, 5, 26, 15, 0, tzinfo=UTC
    )


def test_race_settings_mutations_need_login(client: TestClient, login, images: ImageStore) -> None:
    login(None)

    assert client.put("/race-settings", json={"nextRaceLocation": "Monaco"}).status_code == 401
    assert client.post("/race-settings/clear-next-race").status_code == 401
    assert client.delete("/race-settings/circuit-image").status_code == 401
    upload = client.post("/race-settings/circuit-image", files={CIRCUIT_FIELD: ("c.png", PNG_BYTES, "image/png")})
    assert upload.status_code == 401
    assert upload.json()["detail"] == "Authentication required"
    assert _uploaded_files(images) == []


def test_invalid_race_date_is_400(client: TestClient, login, member: Caller) -> None:
    login(member)
    response = client.put("/race-settings", json={"nextRaceLocation": "Monaco", "nextRaceDate": "next tuesday"})
    assert response.status_code == 400


def test_race_date_out_of_range_is_400_and_board_still_reads(client: TestClient, login, member: Caller) -> None:
    login(member)

    response = client.put("/race-settings", json={"nextRaceLocation": "Nowhere", "nextRaceDate": "9999-12-31T10:00"})

    assert response.status_code == 400
    assert "out of range" in response.json()["detail"]
    board = client.get("/race-settings")
    assert board.status_code == 200
    assert board.json()["nextRaceLocation"] is None


def test_delete_circuit_image_without_settings_is_404(client: TestClient, login, member: Caller) -> None:
    login(member)
    response = client.delete("/race-settings/circuit-image")
    assert (response.status_code, response.json()["detail"]) == (404, "Race settings not found")


def test_next_race_board_end_to_end(
    client: TestClient, login, admin: Caller, images: ImageStore, clock: FixedClock
) -> None:
    login(admin)
    client.put(
        "/race-settings",
        json={"nextRaceLocation": "Monaco", "nextRaceDate": "2024-05-26T07:00", "raceDescription": "GP desc"},
    )

    upload = client.post(
        "/race-settings/circuit-image", files={CIRCUIT_FIELD: ("monaco.png", PNG_BYTES, "image/png")}
    )
    assert upload.status_code == 200
    reference = upload.json()["circuitImage"]
    assert reference.startswith("/uploads/circuits/")
    assert client.get("/race-settings").json()["circuitImage"] == reference

    login(None)
    clock.set(dt.datetime(2024, 5, 28, 0, 0, tzinfo=UTC))
    body = client.get("/race-settings").json()

    assert body["nextRaceLocation"] is None
    assert body["nextRaceDate"] is None
    assert body["raceDescription"] is None
    assert body["circuitImage"] is None
    assert not images.path_for(reference).exists()


def test_clear_next_race_endpoint(client: TestClient, login, member: Caller) -> None:
    login(member)
    client.put("/race-settings", json={"nextRaceLocation": "Spa", "nextRaceDate": "2024-08-25T06:00"})

    response = client.post("/race-settings/clear-next-race")

    assert response.status_code == 200
    assert response.json()["nextRaceLocation"] is None


def test_delete_circuit_image_endpoint(client: TestClient, login, member: Caller, images: ImageStore) -> None:
    login(member)
    reference = client.post(
        "/race-settings/circuit-image", files={CIRCUIT_FIELD: ("spa.png", PNG_BYTES, "image/png")}
    ).json()["circuitImage"]

    response = client.delete("/race-settings/circuit-image")

    assert response.json() == {"message": "Circuit image deleted successfully"}
    assert not images.path_for(reference).exists()
    assert client.get("/race-settings").json()["circuitImage"] is None


# ---- authentication ----------------------------------------------------------------


def test_auth_user_anonymous(client: TestClient) -> None:
    assert client.get("/auth/user").json() == {"user": None, "isAuthorized": False}


def test_auth_user_reports_admin_status(client: TestClient, login, admin: Caller, member: Caller) -> None:
    login(admin)
    body = client.get("/auth/user").json()
    assert body["user"]["email"] == admin.email
    assert body["isAuthorized"] is True

    login(member)
    assert client.get("/auth/user").json()["isAuthorized"] is False


def test_bearer_token_identifies_caller(client: TestClient, fake_google: _FakeOAuth) -> None:
    response = client.post(
        "/leaderboard",
        json={"driverName": "Alice", "points": 1},
        headers={"Authorization": "Bearer admin-token"},
    )
    assert response.status_code == 201

    denied = client.post(
        "/leaderboard",
        json={"driverName": "Bob", "points": 1},
        headers={"Authorization": "Bearer member-token"},
    )
    assert denied.status_code == 403


def test_bad_bearer_token(client: TestClient, fake_google: _FakeOAuth) -> None:
    response = client.get("/auth/user", headers={"Authorization": "Bearer nope"})
    assert (response.status_code, response.json()["detail"]) == (401, "Invalid authentication token")


def test_provider_outage_is_502(client: TestClient, fake_google: _FakeOAuth) -> None:
    response = client.get("/auth/user", headers={"Authorization": "Bearer provider-down"})
    assert response.status_code == 502


def test_non_bearer_header_is_anonymous(client: TestClient, fake_google: _FakeOAuth) -> None:
    response = client.get("/auth/user", headers={"Authorization": "Basic abc"})
    assert response.json() == {"user": None, "isAuthorized": False}


def test_google_login_requires_configuration(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module.config, "google_client_id", "")
    response = client.get("/auth/google", follow_redirects=False)
    assert response.status_code == 500


def test_google_login_round_trip(client: TestClient, fake_google: _FakeOAuth, admin: Caller) -> None:
    start = client.get("/auth/google", follow_redirects=False)
    assert start.status_code == 302
    query = parse_qs(urlparse(start.headers["location"]).query)
    state = query["state"][0]
    assert query["redirect_uri"][0] == "http://testserver/auth/google/callback"

    callback = client.get(f"/auth/google/callback?code=good-code&state={state}", follow_redirects=False)

    assert callback.status_code == 302
    assert callback.headers["location"] == "/"
    assert fake_google.exchanged == [("good-code", "http://testserver/auth/google/callback")]
    body = client.get("/auth/user").json()
    assert body["user"]["id"] == admin.id
    assert body["isAuthorized"] is True

    logout = client.post("/auth/logout")
    assert logout.json() == {"message": "Logged out successfully"}
    assert client.get("/auth/user").json()["user"] is None


def test_google_callback_rejects_state_mismatch(client: TestClient, fake_google: _FakeOAuth) -> None:
    client.get("/auth/google", follow_redirects=False)

    callback = client.get("/auth/google/callback?code=good-code&state=forged", follow_redirects=False)

    assert callback.status_code == 302
    assert fake_google.exchanged == []
    assert client.get("/auth/user").json()["user"] is None


def test_google_callback_with_rejected_code(client: TestClient, fake_google: _FakeOAuth) -> None:
    start = client.get("/auth/google", follow_redirects=False)
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

    callback = client.get(f"/auth/google/callback?code=bad-code&state={state}", follow_redirects=False)

    assert callback.status_code == 302
    assert client.get("/auth/user").json()["user"] is None


def test_google_callback_with_provider_outage(client: TestClient, fake_google: _FakeOAuth) -> None:
    start = client.get("/auth/google", follow_redirects=False)
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

    callback = client.get(f"/auth/google/callback?code=provider-down&state={state}", follow_redirects=False)

    assert callback.status_code == 302
    assert callback.headers["location"] == "/"
    assert client.get("/auth/user").json()["user"] is None


def test_startup_logs_storage_mode(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="app.main")

    with TestClient(main_module.app) as running:
        assert running.get("/health").json() == {"status": "ok"}

    assert any("Starting championship API" in record.getMessage() for record in caplog.records)
