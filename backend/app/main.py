from __future__ import annotations

import datetime as dt
import logging
import os
import secrets
import sys
import time
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.sessions import SessionMiddleware

from evergreen_core import (
    AuthorizationGate,
    Caller,
    DataStore,
    DriverEntry,
    EvergreenError,
    ImageStore,
    LeaderboardService,
    RaceSettings,
    RaceSettingsService,
    StoreError,
    ValidationError,
)
from evergreen_core.images import CIRCUIT_FIELD, PROFILE_FIELD

from .config import get_config
from .oauth import GoogleOAuthClient, OAuthError, ProviderUnavailable

config = get_config()
logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.log_level)
    logger.info(
        "Starting championship API; storage=%s public_dir=%s",
        "supabase" if store().uses_supabase else f"local ({store().data_dir})",
        config.public_dir,
    )
    yield


app = FastAPI(title="Formula Evergreen Championship API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=config.session_secret,
    max_age=config.session_max_age,
    https_only=config.session_cookie_secure,
    session_cookie="sessionId",
)

try:
    (config.public_dir / "uploads" / "circuits").mkdir(parents=True, exist_ok=True)
except OSError as exc:  # pragma: no cover - read-only deployments
    logger.warning("Could not create upload directory under %s: %s", config.public_dir, exc)
app.mount("/uploads", StaticFiles(directory=config.public_dir / "uploads", check_dir=False), name="uploads")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    level = logging.INFO if response.status_code < 400 else logging.WARNING
    logger.log(level, "%s %s -> %s (%.0f ms) [%s]", request.method, request.url.path, response.status_code, elapsed_ms, request_id)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


class LeaderboardEntryModel(BaseModel):
    id: int
    driver_name: str = Field(alias="driverName")
    points: int
    profile_picture: Optional[str] = Field(default=None, alias="profilePicture")
    created_at: Optional[dt.datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[dt.datetime] = Field(default=None, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardEntryPayload(BaseModel):
    driver_name: Optional[str] = Field(default=None, alias="driverName")
    points: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class RaceSettingsModel(BaseModel):
    id: int
    next_race_location: Optional[str] = Field(default=None, alias="nextRaceLocation")
    next_race_date: Optional[dt.datetime] = Field(default=None, alias="nextRaceDate")
    race_description: Optional[str] = Field(default=None, alias="raceDescription")
    circuit_image: Optional[str] = Field(default=None, alias="circuitImage")
    created_at: Optional[dt.datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[dt.datetime] = Field(default=None, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class RaceSettingsPayload(BaseModel):
    next_race_location: Optional[str] = Field(default=None, alias="nextRaceLocation")
    # Pacific wall-clock time from a datetime-local input, e.g. "2024-05-26T07:00"
    next_race_date: Optional[str] = Field(default=None, alias="nextRaceDate")
    race_description: Optional[str] = Field(default=None, alias="raceDescription")

    model_config = ConfigDict(populate_by_name=True)


class MessageResponse(BaseModel):
    message: str


class CircuitImageResponse(BaseModel):
    message: str
    circuit_image: str = Field(alias="circuitImage")

    model_config = ConfigDict(populate_by_name=True)


class ProfilePictureResponse(BaseModel):
    message: str
    profile_picture: str = Field(alias="profilePicture")

    model_config = ConfigDict(populate_by_name=True)


class UserModel(BaseModel):
    id: str
    email: str
    name: str
    photo: Optional[str] = None


class CurrentUserResponse(BaseModel):
    user: Optional[UserModel] = None
    is_authorized: bool = Field(alias="isAuthorized")

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore(data_dir=config.data_dir)


@lru_cache(maxsize=1)
def images() -> ImageStore:
    return ImageStore(config.public_dir, max_bytes=config.max_upload_bytes)


@lru_cache(maxsize=1)
def gate() -> AuthorizationGate:
    return AuthorizationGate()


@lru_cache(maxsize=1)
def oauth_client() -> GoogleOAuthClient:
    return GoogleOAuthClient(config.google_client_id, config.google_client_secret)


def get_image_store() -> ImageStore:
    return images()


def get_gate() -> AuthorizationGate:
    return gate()


def get_race_settings_service() -> RaceSettingsService:
    return RaceSettingsService(store(), images(), gate())


def get_leaderboard_service() -> LeaderboardService:
    return LeaderboardService(store(), images(), gate())


def current_caller(request: Request, authorization: str = Header(default="")) -> Optional[Caller]:
    """Caller from the login session, or from a Google bearer token."""
    caller = Caller.from_profile(request.session.get("user"))
    if caller is not None:
        return caller

    if not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        return None

    try:
        return oauth_client().fetch_user(token)
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except OAuthError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token") from exc


def _http_error(exc: EvergreenError, message: str) -> HTTPException:
    if isinstance(exc, StoreError):
        logger.error("%s: %s", message, exc)
        detail = f"{message}: {exc}" if config.expose_error_detail else message
        return HTTPException(status_code=500, detail=detail)
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _entry_model(entry: DriverEntry) -> LeaderboardEntryModel:
    return LeaderboardEntryModel(
        id=entry.id,
        driverName=entry.driver_name,
        points=entry.points,
        profilePicture=entry.profile_picture,
        createdAt=entry.created_at,
        updatedAt=entry.updated_at,
    )


def _settings_model(settings: RaceSettings) -> RaceSettingsModel:
    return RaceSettingsModel(
        id=settings.id,
        nextRaceLocation=settings.next_race_location,
        nextRaceDate=settings.next_race_date,
        raceDescription=settings.race_description,
        circuitImage=settings.circuit_image,
        createdAt=settings.created_at,
        updatedAt=settings.updated_at,
    )


def _store_upload(image_store: ImageStore, field: str, upload: Optional[UploadFile]) -> str:
    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded")
    try:
        return image_store.save(field, upload.filename, upload.content_type, upload.file)
    except OSError as exc:
        raise StoreError(f"Could not write upload: {exc}") from exc


@app.get("/")
def root() -> Dict[str, str]:
    return {"message": "Formula Evergreen Championship API"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ---- authentication ------------------------------------------------------------


def _callback_url(request: Request) -> str:
    url = config.google_callback_url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return str(request.base_url).rstrip("/") + "/" + url.lstrip("/")


@app.get("/auth/google")
def google_login(request: Request):
    if not config.google_configured:
        raise HTTPException(status_code=500, detail="Google OAuth configuration is incomplete")
    state = secrets.token_urlsafe(24)
    request.session["oauth_state"] = state
    return RedirectResponse(oauth_client().authorization_url(_callback_url(request), state), status_code=302)


@app.get("/auth/google/callback")
def google_callback(request: Request, code: str = "", state: str = "", error: str = ""):
    expected_state = request.session.pop("oauth_state", None)
    if error or not code or not state or state != expected_state:
        logger.warning("Google login failed: %s", error or "missing code or state mismatch")
        return RedirectResponse("/", status_code=302)

    try:
        client = oauth_client()
        token = client.exchange_code(code, _callback_url(request))
        caller = client.fetch_user(token)
    except OAuthError as exc:
        logger.warning("Google login failed: %s", exc)
        return RedirectResponse("/", status_code=302)

    request.session["user"] = caller.as_session()
    logger.info("Login succeeded for %s", caller.email or caller.id)
    return RedirectResponse("/", status_code=302)


@app.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> MessageResponse:
    user = request.session.get("user") or {}
    request.session.clear()
    logger.info("Logout for %s", user.get("email") or user.get("id") or "anonymous session")
    return MessageResponse(message="Logged out successfully")


@app.get("/auth/user", response_model=CurrentUserResponse)
def auth_user(
    caller: Optional[Caller] = Depends(current_caller),
    access: AuthorizationGate = Depends(get_gate),
) -> CurrentUserResponse:
    if caller is None:
        return CurrentUserResponse(user=None, isAuthorized=False)
    return CurrentUserResponse(user=UserModel(**caller.as_session()), isAuthorized=access.is_authorized(caller))


# ---- race settings -------------------------------------------------------------


@app.get("/race-settings", response_model=RaceSettingsModel)
def get_race_settings(service: RaceSettingsService = Depends(get_race_settings_service)):
    try:
        settings = service.get_settings()
    except EvergreenError as exc:
        raise _http_error(exc, "Error fetching race settings") from exc
    return _settings_model(settings)


@app.put("/race-settings", response_model=RaceSettingsModel)
def update_race_settings(
    payload: RaceSettingsPayload,
    caller: Optional[Caller] = Depends(current_caller),
    service: RaceSettingsService = Depends(get_race_settings_service),
):
    try:
        settings = service.update_settings(
            payload.next_race_location,
            payload.next_race_date,
            payload.race_description,
            caller,
        )
    except EvergreenError as exc:
        raise _http_error(exc, "Error updating race settings") from exc
    return _settings_model(settings)


@app.post("/race-settings/circuit-image", response_model=CircuitImageResponse)
def upload_circuit_image(
    circuit_image: Optional[UploadFile] = File(default=None, alias=CIRCUIT_FIELD),
    caller: Optional[Caller] = Depends(current_caller),
    service: RaceSettingsService = Depends(get_race_settings_service),
    image_store: ImageStore = Depends(get_image_store),
):
    try:
        service.gate.require_authenticated(caller)
        reference = _store_upload(image_store, CIRCUIT_FIELD, circuit_image)
    except EvergreenError as exc:
        raise _http_error(exc, "Error uploading circuit image") from exc

    try:
        settings = service.set_circuit_image(reference, caller)
    except EvergreenError as exc:
        image_store.discard(reference)
        raise _http_error(exc, "Error uploading circuit image") from exc
    return CircuitImageResponse(message="Circuit image uploaded successfully", circuitImage=settings.circuit_image or reference)


@app.delete("/race-settings/circuit-image", response_model=MessageResponse)
def delete_circuit_image(
    caller: Optional[Caller] = Depends(current_caller),
    service: RaceSettingsService = Depends(get_race_settings_service),
):
    try:
        service.delete_circuit_image(caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error deleting circuit image") from exc
    return MessageResponse(message="Circuit image deleted successfully")


@app.post("/race-settings/clear-next-race", response_model=RaceSettingsModel)
def clear_next_race(
    caller: Optional[Caller] = Depends(current_caller),
    service: RaceSettingsService = Depends(get_race_settings_service),
):
    try:
        settings = service.clear_next_race(caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error clearing next race") from exc
    return _settings_model(settings)


# ---- leaderboard ---------------------------------------------------------------


@app.get("/leaderboard", response_model=List[LeaderboardEntryModel])
def list_leaderboard(service: LeaderboardService = Depends(get_leaderboard_service)):
    try:
        entries = service.list_entries()
    except EvergreenError as exc:
        raise _http_error(exc, "Error fetching leaderboards") from exc
    return [_entry_model(entry) for entry in entries]


@app.post("/leaderboard", response_model=LeaderboardEntryModel, status_code=201)
def create_leaderboard_entry(
    payload: LeaderboardEntryPayload,
    caller: Optional[Caller] = Depends(current_caller),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    try:
        entry = service.create(payload.driver_name, payload.points, caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error creating leaderboard entry") from exc
    return _entry_model(entry)


@app.put("/leaderboard/{entry_id}", response_model=LeaderboardEntryModel)
def update_leaderboard_entry(
    entry_id: int,
    payload: LeaderboardEntryPayload,
    caller: Optional[Caller] = Depends(current_caller),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    try:
        entry = service.update(entry_id, payload.driver_name, payload.points, caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error updating leaderboard entry") from exc
    return _entry_model(entry)


@app.delete("/leaderboard/{entry_id}", response_model=MessageResponse)
def delete_leaderboard_entry(
    entry_id: int,
    caller: Optional[Caller] = Depends(current_caller),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    try:
        service.delete(entry_id, caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error deleting leaderboard entry") from exc
    return MessageResponse(message="Leaderboard entry deleted successfully")


@app.post("/leaderboard/{entry_id}/profile-picture", response_model=ProfilePictureResponse)
def upload_profile_picture(
    entry_id: int,
    profile_picture: Optional[UploadFile] = File(default=None, alias=PROFILE_FIELD),
    caller: Optional[Caller] = Depends(current_caller),
    service: LeaderboardService = Depends(get_leaderboard_service),
    image_store: ImageStore = Depends(get_image_store),
):
    try:
        service.gate.require_authorized(caller)
        reference = _store_upload(image_store, PROFILE_FIELD, profile_picture)
    except EvergreenError as exc:
        raise _http_error(exc, "Error uploading profile picture") from exc

    try:
        entry = service.set_profile_picture(entry_id, reference, caller)
    except EvergreenError as exc:
        image_store.discard(reference)
        raise _http_error(exc, "Error uploading profile picture") from exc
    return ProfilePictureResponse(
        message="Profile picture uploaded successfully",
        profilePicture=entry.profile_picture or reference,
    )


@app.delete("/leaderboard/{entry_id}/profile-picture", response_model=MessageResponse)
def delete_profile_picture(
    entry_id: int,
    caller: Optional[Caller] = Depends(current_caller),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    try:
        service.clear_profile_picture(entry_id, caller)
    except EvergreenError as exc:
        raise _http_error(exc, "Error deleting profile picture") from exc
    return MessageResponse(message="Profile picture deleted successfully")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
