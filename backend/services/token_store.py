# backend/services/token_store.py
"""Per-user Google OAuth credential cache.

Each user row holds exactly one cached access token. It is handed out while
it is still fresh; otherwise it is refreshed against Google's token endpoint
immediately before use and the new value is committed before being returned.
Any failure along the way yields ``None`` so callers can skip the remote call.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import GoogleClientConfig
from models import User, utcnow

logger = logging.getLogger(__name__)


class OAuthTokenStore:
    def __init__(self, session: AsyncSession, client: GoogleClientConfig,
                 refresh_skew: timedelta = timedelta(seconds=60), timeout_seconds: float = 10.0):
        self.session = session
        self.client = client
        self.refresh_skew = refresh_skew
        self.timeout_seconds = timeout_seconds

    def _build_credentials(self, user: User) -> Credentials:
        return Credentials(
            token=user.oauth_access_token,
            refresh_token=user.oauth_refresh_token,
            token_uri=self.client.token_uri,
            client_id=self.client.client_id,
            client_secret=self.client.client_secret,
            scopes=list(self.client.scopes),
            expiry=user.oauth_token_expiry,
        )

    def _is_fresh(self, user: User) -> bool:
        if not user.oauth_access_token or user.oauth_token_expiry is None:
            return False
        return user.oauth_token_expiry - self.refresh_skew > utcnow()

    async def get_valid_credential(self, user_id: int) -> Optional[Credentials]:
        user = await self.session.get(User, user_id)
        if user is None or not (user.oauth_access_token or user.oauth_refresh_token):
            logger.debug("No Google credential linked for user %s", user_id)
            return None
        if self._is_fresh(user):
            return self._build_credentials(user)
        if not user.oauth_refresh_token or not self.client.configured:
            logger.info("Google credential for user %s expired and cannot be refreshed", user_id)
            return None

        creds = self._build_credentials(user)
        try:
            await asyncio.wait_for(asyncio.to_thread(creds.refresh, Request()), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Google token refresh timed out for user %s", user_id)
            return None
        except GoogleAuthError as e:
            logger.warning("Google token refresh failed for user %s: %s", user_id, type(e).__name__)
            return None

        user.oauth_access_token = creds.token
        user.oauth_token_expiry = creds.expiry
        if creds.refresh_token and creds.refresh_token != user.oauth_refresh_token:
            user.oauth_refresh_token = creds.refresh_token
        if not await self._save(user):
            return None
        logger.info("Refreshed Google access token for user %s", user_id)
        return creds

    async def persist_consent(self, user_id: int, access_token: str, refresh_token: Optional[str],
                              expiry: Optional[datetime]) -> bool:
        user = await self.session.get(User, user_id)
        if user is None:
            logger.warning("Consent callback for unknown user %s", user_id)
            return False
        user.oauth_access_token = access_token
        # Google only sends a refresh token on the first consent unless prompt=consent is forced.
        if refresh_token:
            user.oauth_refresh_token = refresh_token
        user.oauth_token_expiry = expiry
        if not await self._save(user):
            return False
        logger.info("Linked Google Calendar for user %s", user_id)
        return True

    async def _save(self, user: User) -> bool:
        user.updated_at = utcnow()
        self.session.add(user)
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception("Persisting Google credential failed for user %s", user.id)
            return False
        return True
