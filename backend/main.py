# backend/main.py
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Depends, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr

from config import Settings, configure_logging, get_settings
from database import create_db_and_tables, get_session
from errors import AppError, AuthError
from models import NoteRead, User, UserRead
import auth
from auth import ACCESS_COOKIE, REFRESH_COOKIE, get_current_user, oauth
from services import note_service
from services.calendar_service import CalendarSyncEngine
from services.token_store import OAuthTokenStore

logger = logging.getLogger(__name__)

COOKIE_OPTIONS = {"httponly": True, "secure": True}


def get_token_store(session: AsyncSession = Depends(get_session),
                    settings: Settings = Depends(get_settings)) -> OAuthTokenStore:
    return OAuthTokenStore(session, settings.google_client(), refresh_skew=settings.oauth_refresh_skew,
                           timeout_seconds=settings.calendar_sync_timeout_seconds)

def get_sync_engine(token_store: OAuthTokenStore = Depends(get_token_store),
                    settings: Settings = Depends(get_settings)) -> CalendarSyncEngine:
    return CalendarSyncEngine(token_store, settings.calendar_sync())


# --- Pydantic Models ---
class RegisterRequest(BaseModel): name: str; email: EmailStr; password: str
class LoginRequest(BaseModel): email: str; password: str
class RefreshRequest(BaseModel): refreshToken: Optional[str] = None
class NoteCreateRequest(BaseModel):
    title: str
    content: str
    isPublic: bool = False
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
class NoteUpdateRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    isPublic: Optional[bool] = None
class SessionResponse(BaseModel): user: UserRead; accessToken: str; refreshToken: str


def _set_session_cookies(response: Response, pair: auth.TokenPair) -> None:
    response.set_cookie(ACCESS_COOKIE, pair.access_token, **COOKIE_OPTIONS)
    response.set_cookie(REFRESH_COOKIE, pair.refresh_token, **COOKIE_OPTIONS)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up and creating database tables...")
        await create_db_and_tables()
        logger.info("Startup complete.")
        yield

    app = FastAPI(lifespan=lifespan)
    # Every Depends(get_settings) in this app resolves to the settings it was built with.
    app.dependency_overrides[get_settings] = lambda: settings
    app.add_middleware(
        CORSMiddleware, allow_origins=[settings.client_url], allow_credentials=True,
        allow_methods=["*"], allow_headers=["*"],
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret_key)
    google_enabled = auth.register_google_client(settings)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "statusCode": exc.status_code, "message": exc.message},
        )

    # --- Users ---
    @app.post("/api/v1/users/register", response_model=UserRead, status_code=201)
    async def register(body: RegisterRequest, session: AsyncSession = Depends(get_session)):
        user = await auth.register_user(session, body.name, body.email, body.password)
        return UserRead.from_user(user)

    @app.post("/api/v1/users/login", response_model=SessionResponse)
    async def login(body: LoginRequest, response: Response, session: AsyncSession = Depends(get_session)):
        user, pair = await auth.authenticate(session, body.email, body.password, settings)
        _set_session_cookies(response, pair)
        return SessionResponse(user=UserRead.from_user(user), accessToken=pair.access_token,
                               refreshToken=pair.refresh_token)

    @app.post("/api/v1/users/refresh-token", response_model=SessionResponse)
    async def refresh_token(request: Request, response: Response, body: Optional[RefreshRequest] = None,
                            session: AsyncSession = Depends(get_session)):
        presented = (request.cookies.get(REFRESH_COOKIE) or (body.refreshToken if body else None)
                     or request.query_params.get("refreshToken"))
        user, pair = await auth.refresh_session(session, presented, settings)
        _set_session_cookies(response, pair)
        return SessionResponse(user=UserRead.from_user(user), accessToken=pair.access_token,
                               refreshToken=pair.refresh_token)

    @app.post("/api/v1/users/logout")
    async def logout(response: Response, current_user: User = Depends(get_current_user),
                     session: AsyncSession = Depends(get_session)):
        await auth.logout(session, current_user.id)
        response.delete_cookie(ACCESS_COOKIE, **COOKIE_OPTIONS)
        response.delete_cookie(REFRESH_COOKIE, **COOKIE_OPTIONS)
        return {"message": "User logged out"}

    @app.get("/api/v1/users/me", response_model=UserRead)
    async def get_profile(current_user: User = Depends(get_current_user)):
        return UserRead.from_user(current_user)

    # --- Notes ---
    @app.post("/api/v1/notes", response_model=NoteRead, status_code=201)
    async def create_note(body: NoteCreateRequest, current_user: User = Depends(get_current_user),
                          session: AsyncSession = Depends(get_session),
                          engine: CalendarSyncEngine = Depends(get_sync_engine)):
        note, _ = await note_service.create_note(
            session, engine, current_user, title=body.title, content=body.content,
            is_public=body.isPublic, start_time=body.startTime, end_time=body.endTime,
        )
        return note

    @app.get("/api/v1/notes", response_model=List[NoteRead])
    async def list_my_notes(current_user: User = Depends(get_current_user),
                            session: AsyncSession = Depends(get_session)):
        return await note_service.list_own_notes(session, current_user)

    @app.get("/api/v1/notes/public", response_model=List[NoteRead])
    async def list_public_notes(current_user: User = Depends(get_current_user),
                                session: AsyncSession = Depends(get_session)):
        return await note_service.list_public_notes(session)

    @app.get("/api/v1/notes/{note_id}", response_model=NoteRead)
    async def get_note(note_id: int, current_user: User = Depends(get_current_user),
                       session: AsyncSession = Depends(get_session)):
        return await note_service.get_note(session, current_user, note_id)

    @app.put("/api/v1/notes/{note_id}", response_model=NoteRead)
    async def update_note(note_id: int, body: NoteUpdateRequest, current_user: User = Depends(get_current_user),
                          session: AsyncSession = Depends(get_session)):
        return await note_service.update_note(session, current_user, note_id, title=body.title,
                                              content=body.content, is_public=body.isPublic)

    @app.delete("/api/v1/notes/{note_id}")
    async def delete_note(note_id: int, current_user: User = Depends(get_current_user),
                          session: AsyncSession = Depends(get_session),
                          engine: CalendarSyncEngine = Depends(get_sync_engine)):
        await note_service.delete_note(session, engine, current_user, note_id)
        return {"message": "Note deleted"}

    # --- Google Calendar linking ---
    @app.get("/auth/google")
    async def google_login(request: Request, token: Optional[str] = None):
        if not token:
            return PlainTextResponse("Missing user token", status_code=400)
        if not google_enabled:
            return PlainTextResponse("Google Calendar linking is not configured", status_code=503)
        redirect_uri = settings.google_redirect_uri or str(request.url_for('google_callback'))
        return await oauth.google.authorize_redirect(
            request, redirect_uri, state=token, access_type="offline", prompt="consent",
        )

    @app.get("/auth/google/callback", name="google_callback")
    async def google_callback(request: Request, token_store: OAuthTokenStore = Depends(get_token_store)):
        state = request.query_params.get("state")
        if not request.query_params.get("code") or not state:
            return PlainTextResponse("Invalid callback data", status_code=400)
        try:
            user_id = auth.decode_token(state, "access", settings)
        except AuthError as e:
            return PlainTextResponse(e.message, status_code=400)
        try:
            token = await oauth.google.authorize_access_token(request)
        except Exception as e:
            logger.error("Google authorization code exchange failed for user %s: %s", user_id, e)
            return PlainTextResponse("Google OAuth failed. Please try again.", status_code=500)
        expiry = None
        if token.get("expires_at"):
            expiry = datetime.fromtimestamp(token["expires_at"], tz=timezone.utc).replace(tzinfo=None)
        linked = await token_store.persist_consent(
            user_id, token.get("access_token"), token.get("refresh_token"), expiry,
        )
        if not linked:
            return PlainTextResponse("Google OAuth failed. Please try again.", status_code=500)
        return HTMLResponse(LINKED_PAGE)

    @app.get("/")
    async def read_root():
        return {"message": "Scribly backend is running!"}

    return app


LINKED_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Google Connected</title></head>
<body>
  <h2>Google Calendar Linked!</h2>
  <p>Your account is now connected to Google Calendar. You can close this page.</p>
  <button onclick="window.close()">Close</button>
</body>
</html>
"""


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = _build_default_app()
