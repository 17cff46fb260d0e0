from datetime import timedelta

import pytest

from carebot.exceptions import TokenExpiredError, TransientError
from carebot.models.session import SessionState
from carebot.schemas.session import SessionData, TokenSource
from carebot.services.retry import RetryOutcome
from carebot.services.token_lifecycle import TokenLifecycle
from carebot.utils.timeutils import utcnow

LIFECYCLE = TokenLifecycle(
    idle_timeout=timedelta(minutes=10),
    expiry=timedelta(minutes=60),
    refresh_threshold=timedelta(minutes=5),
)


def _refresh_to(value=None, error=None):
    async def refresh():
        return RetryOutcome(label="refresh", value=value, error=error, attempts=1)
    return refresh


def test_idle_expiry_only_applies_when_logged_in():
    data = SessionData()
    LIFECYCLE.issue_local(data)
    data.local_token.last_used = utcnow() - timedelta(minutes=11)

    assert LIFECYCLE.check_idle_expiry(SessionState.LOGGED_IN, data).expired
    assert not LIFECYCLE.check_idle_expiry(SessionState.REGISTERING, data).expired


def test_recent_activity_is_not_idle():
    data = SessionData()
    LIFECYCLE.issue_local(data)
    data.local_token.last_used = utcnow() - timedelta(minutes=9)
    assert not LIFECYCLE.check_idle_expiry(SessionState.LOGGED_IN, data).expired


def test_touch_issues_missing_local_token():
    data = SessionData()
    LIFECYCLE.touch(data)
    assert data.local_token is not None
    assert data.local_token.source == TokenSource.LOCAL


def test_refresh_needed_inside_threshold():
    data = SessionData()
    track = LIFECYCLE.issue_local(data)
    assert not LIFECYCLE.check_refresh_needed(track)

    track.created_at = utcnow() - timedelta(minutes=56)
    assert LIFECYCLE.check_refresh_needed(track)


@pytest.mark.asyncio
async def test_get_or_refresh_returns_current_value_when_fresh():
    data = SessionData()
    track = LIFECYCLE.store_external(data, "ext-1")
    called = []

    async def refresh():
        called.append(True)

    assert await LIFECYCLE.get_or_refresh(data, TokenSource.EXTERNAL, refresh) == "ext-1"
    assert called == []
    assert data.external_token is track


@pytest.mark.asyncio
async def test_get_or_refresh_replaces_token_near_expiry():
    data = SessionData()
    LIFECYCLE.store_external(data, "ext-1")
    data.external_token.created_at = utcnow() - timedelta(minutes=57)

    value = await LIFECYCLE.get_or_refresh(data, TokenSource.EXTERNAL, _refresh_to("ext-2"))

    assert value == "ext-2"
    assert data.external_token.value == "ext-2"
    assert not LIFECYCLE.check_refresh_needed(data.external_token)


@pytest.mark.asyncio
async def test_failed_early_refresh_keeps_valid_token():
    data = SessionData()
    LIFECYCLE.store_external(data, "ext-1")
    data.external_token.created_at = utcnow() - timedelta(minutes=57)

    value = await LIFECYCLE.get_or_refresh(data, TokenSource.EXTERNAL, _refresh_to(error=TransientError("down")))
    assert value == "ext-1"


@pytest.mark.asyncio
async def test_failed_refresh_of_expired_token_raises():
    data = SessionData()
    LIFECYCLE.store_external(data, "ext-1")
    data.external_token.created_at = utcnow() - timedelta(minutes=61)

    with pytest.raises(TokenExpiredError):
        await LIFECYCLE.get_or_refresh(data, TokenSource.EXTERNAL, _refresh_to(error=TransientError("down")))


@pytest.mark.asyncio
async def test_tracks_refresh_independently():
    data = SessionData()
    LIFECYCLE.issue_local(data)
    LIFECYCLE.store_external(data, "ext-1")
    local_value = data.local_token.value
    data.external_token.created_at = utcnow() - timedelta(minutes=57)

    await LIFECYCLE.get_or_refresh(data, TokenSource.EXTERNAL, _refresh_to("ext-2"))

    assert data.local_token.value == local_value
    assert data.external_token.value == "ext-2"
