# backend/auth.py
import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import NamedTuple, Optional, Tuple
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from authlib.integrations.starlette_client import OAuth
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import CALENDAR_SCOPES, Settings, get_settings
from database import get_session
from errors import AuthError, InternalError, ValidationError
from models import User, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/users/login", auto_error=False)
oauth = OAuth()


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


def register_google_client(settings: Settings) -> bool:
    """Registers the consent-flow client once Google credentials are configured."""
    if not settings.google_client().configured:
        logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set, calendar linking disabled.")
        return False
    oauth.register(
        name='google', client_id=settings.google_client_id, client_secret=settings.google_client_secret,
        server_metadata_url='https://accounts.google.com/.well-known/openid-configuration',
        client_kwargs={'scope': ' '.join(CALENDAR_SCOPES)},
        overwrite=True,
    )
    return True


# --- Passwords ---
def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


# --- Tokens ---
def _encode(user_id: int, kind: str, settings: Settings) -> str:
    if kind == "access":
        secret, lifetime = settings.access_token_secret, settings.access_token_lifetime
    else:
        secret, lifetime = settings.refresh_token_secret, settings.refresh_token_lifetime
    claims = {
        "sub": str(user_id),
        "type": kind,
        "jti": uuid.uuid4().hex,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)

def create_access_token(user_id: int, settings: Optional[Settings] = None) -> str:
    return _encode(user_id, "access", settings or get_settings())

def create_refresh_token(user_id: int, settings: Optional[Settings] = None) -> str:
    return _encode(user_id, "refresh", settings or get_settings())

def decode_token(token: str, kind: str, settings: Optional[Settings] = None) -> int:
    """Verifies signature and expiry, then returns the subject id."""
    settings = settings or get_settings()
    secret = settings.access_token_secret if kind == "access" else settings.refresh_token_secret
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthError(f"{kind.capitalize()} token expired")
    except JWTError:
        raise AuthError(f"Invalid {kind} token")
    if payload.get("type") != kind:
        raise AuthError(f"Invalid {kind} token")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise AuthError(f"Invalid {kind} token")


# --- Session lifecycle ---
async def _commit(session: AsyncSession, user: User, action: str) -> None:
    user.updated_at = utcnow()
    session.add(user)
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Persisting %s failed for user %s", action, user.id)
        raise InternalError(f"Something went wrong while {action}")
    await session.refresh(user)

async def _issue_tokens(session: AsyncSession, user: User, settings: Settings) -> TokenPair:
    pair = TokenPair(create_access_token(user.id, settings), create_refresh_token(user.id, settings))
    # The stored value is the only refresh token that will be accepted from now on.
    user.refresh_token = pair.refresh_token
    await _commit(session, user, "generating access and refresh tokens")
    return pair

def _normalize_email(email: str) -> str:
    return email.strip().lower()

async def find_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == _normalize_email(email)))
    return result.scalar_one_or_none()

async def register_user(session: AsyncSession, name: str, email: str, password: str) -> User:
    if any(not isinstance(v, str) or not v.strip() for v in (name, email, password)):
        raise ValidationError("All fields are required")
    if await find_user_by_email(session, email):
        raise ValidationError("User already exists with this email")
    user = User(name=name.strip(), email=_normalize_email(email), password_hash=hash_password(password))
    await _commit(session, user, "creating the user")
    logger.info("Registered user %s", user.id)
    return user

async def authenticate(session: AsyncSession, email: str, password: str,
                       settings: Optional[Settings] = None) -> Tuple[User, TokenPair]:
    if any(not isinstance(v, str) or not v.strip() for v in (email, password)):
        raise ValidationError("All fields are required")
    user = await find_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError("Invalid email or password")
    pair = await _issue_tokens(session, user, settings or get_settings())
    logger.info("User %s logged in", user.id)
    return user, pair

async def refresh_session(session: AsyncSession, presented: Optional[str],
                          settings: Optional[Settings] = None) -> Tuple[User, TokenPair]:
    settings = settings or get_settings()
    if not presented:
        raise AuthError("Please login first")
    user_id = decode_token(presented, "refresh", settings)
    user = await session.get(User, user_id)
    if user is None:
        raise AuthError("User not found")
    if not user.refresh_token or not hmac.compare_digest(presented, user.refresh_token):
        logger.warning("Rejected superseded or revoked refresh token for user %s", user_id)
        raise AuthError("Invalid refresh token")
    pair = await _issue_tokens(session, user, settings)
    return user, pair

async def logout(session: AsyncSession, user_id: int) -> None:
    user = await session.get(User, user_id)
    if user is None:
        return
    user.refresh_token = None
    await _commit(session, user, "logging out")
    logger.info("User %s logged out", user_id)


# --- Request dependency ---
async def get_current_user(request: Request, bearer: Optional[str] = Depends(oauth2_scheme),
                           session: AsyncSession = Depends(get_session),
                           settings: Settings = Depends(get_settings)) -> User:
    token = request.cookies.get(ACCESS_COOKIE) or bearer
    if not token:
        raise AuthError("Unauthorized request")
    user = await session.get(User, decode_token(token, "access", settings))
    if user is None:
        raise AuthError("Invalid access token")
    return user
