"""
Idle-timeout eviction and refresh-before-expiry for the two token tracks.

The local track is minted by this service and measures conversation activity.
The external track is whatever the domain API issued at login/registration.
They are refreshed independently and never substituted for one another.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from carebot.config import get_settings
from carebot.exceptions import TokenExpiredError
from carebot.models.session import SessionState
from carebot.schemas.session import SessionData, TokenSource, TokenTrack
from carebot.services.retry import RetryOutcome
from carebot.utils.security import generate_token
from carebot.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class IdleCheck:
    expired: bool
    idle_for: Optional[timedelta] = None


class TokenLifecycle:
    def __init__(self, idle_timeout: timedelta = None, expiry: timedelta = None, refresh_threshold: timedelta = None):
        settings = get_settings()
        self.idle_timeout = idle_timeout or timedelta(minutes=settings.SESSION_IDLE_TIMEOUT_MINUTES)
        self.expiry = expiry or timedelta(minutes=settings.TOKEN_EXPIRY_MINUTES)
        self.refresh_threshold = refresh_threshold or timedelta(minutes=settings.TOKEN_REFRESH_THRESHOLD_MINUTES)

    def check_idle_expiry(self, state: SessionState, data: SessionData, idle_timeout: timedelta = None) -> IdleCheck:
        # Only authenticated sessions can idle out
        if state != SessionState.LOGGED_IN:
            return IdleCheck(expired=False)
        track = data.local_token
        if track is None:
            return IdleCheck(expired=False)
        idle_for = utcnow() - track.last_used
        return IdleCheck(expired=idle_for > (idle_timeout or self.idle_timeout), idle_for=idle_for)

    def issue_local(self, data: SessionData) -> TokenTrack:
        now = utcnow()
        track = TokenTrack(value=generate_token(), source=TokenSource.LOCAL, created_at=now, last_used=now)
        data.set_token(track)
        return track

    def store_external(self, data: SessionData, value: str) -> TokenTrack:
        now = utcnow()
        track = TokenTrack(value=value, source=TokenSource.EXTERNAL, created_at=now, last_used=now)
        data.set_token(track)
        return track

    def touch(self, data: SessionData):
        """Mark the conversation as active. Called on every authenticated event."""
        if data.local_token is None:
            self.issue_local(data)
            return
        data.local_token.last_used = utcnow()

    def check_refresh_needed(self, track: TokenTrack, expiry: timedelta = None, refresh_threshold: timedelta = None) -> bool:
        expiry = expiry or self.expiry
        refresh_threshold = refresh_threshold or self.refresh_threshold
        remaining = expiry - (utcnow() - track.created_at)
        return remaining <= refresh_threshold

    def is_hard_expired(self, track: TokenTrack, expiry: timedelta = None) -> bool:
        return utcnow() - track.created_at >= (expiry or self.expiry)

    async def get_or_refresh(
        self,
        data: SessionData,
        source: TokenSource,
        refresh_fn: Callable[[], Awaitable[RetryOutcome]],
    ) -> str:
        track = data.token(source)
        if track is None:
            raise TokenExpiredError(f"No {source.value} token on session")

        if not self.check_refresh_needed(track):
            track.last_used = utcnow()
            return track.value

        outcome = await refresh_fn()
        if outcome.ok and outcome.value:
            now = utcnow()
            data.set_token(TokenTrack(value=outcome.value, source=source, created_at=now, last_used=now))
            logger.info(f"Refreshed {source.value} token after {outcome.attempts} attempt(s)")
            return outcome.value

        if self.is_hard_expired(track):
            logger.warning(f"{source.value} token expired and refresh failed: {outcome.error}")
            raise TokenExpiredError(f"{source.value} token expired")

        # Early refresh failed but the token is still valid
        logger.warning(f"Early refresh of {source.value} token failed, keeping current token: {outcome.error}")
        track.last_used = utcnow()
        return track.value
