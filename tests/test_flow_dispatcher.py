from datetime import timedelta

import pytest

from carebot.exceptions import TransientError
from carebot.models.session import SessionState
from carebot.schemas.session import ListKind, SessionData
from carebot.services import messages
from carebot.services.flow_dispatcher import FlowDispatcher
from carebot.services.intent_classifier import RuleBasedClassifier
from carebot.services.session_store import SessionStore
from carebot.utils.timeutils import utcnow

PHONE = "+2348000000005"


class RecordingClassifier(RuleBasedClassifier):
    def __init__(self):
        self.seen = []

    async def classify(self, text, identity="", session=None):
        self.seen.append(text)
        return await super().classify(text, identity, session)


class MeddlingClassifier(RuleBasedClassifier):
    """Writes to the session row from another connection mid-event."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def classify(self, text, identity="", session=None):
        async with self.session_factory() as other:
            store = SessionStore(other)
            row = await store.load(identity)
            await store.save(row, SessionState.LOGGING_IN, SessionData())
        return await super().classify(text, identity, session)


@pytest.fixture
def dispatcher_for(db_session, domain, mailer):
    def _build(classifier=None):
        return FlowDispatcher(db_session, domain, mailer, classifier or RuleBasedClassifier())
    return _build


async def _login(dispatcher, domain):
    domain.users["ada@example.com"] = {"id": 7, "email": "ada@example.com", "password": "secret123"}
    await dispatcher.handle_message(f"whatsapp:{PHONE}", "login ada@example.com secret123")


@pytest.mark.asyncio
async def test_code_is_never_sent_to_the_classifier(dispatcher_for, mailer, load_session):
    classifier = RecordingClassifier()
    dispatcher = dispatcher_for(classifier)

    await dispatcher.handle_message(PHONE, "register Ada Obi ada@example.com secret123")
    replies = await dispatcher.handle_message(PHONE, mailer.last_code)

    assert mailer.last_code not in classifier.seen
    assert "Your account is ready" in replies[0]


@pytest.mark.asyncio
async def test_page_number_wins_over_menu_shortcut(dispatcher_for, domain):
    classifier = RecordingClassifier()
    dispatcher = dispatcher_for(classifier)
    await _login(dispatcher, domain)
    domain.catalog[ListKind.DOCTORS] = [{"id": i, "name": f"Doc {i}"} for i in range(1, 8)]

    await dispatcher.handle_message(PHONE, "doctors")
    replies = await dispatcher.handle_message(PHONE, "2")

    assert "(Page 2/2)" in replies[0]
    assert "2" not in classifier.seen


@pytest.mark.asyncio
async def test_logged_in_always_has_local_token(dispatcher_for, domain, load_session):
    dispatcher = dispatcher_for()
    await _login(dispatcher, domain)
    await dispatcher.handle_message(PHONE, "help")

    session = await load_session(PHONE)
    assert session.state == SessionState.LOGGED_IN
    assert session.data["local_token"]["value"]
    assert session.data["local_token"]["source"] == "local"


@pytest.mark.asyncio
async def test_concurrent_write_asks_user_to_resend(dispatcher_for, session_factory, load_session):
    await dispatcher_for().handle_message(PHONE, "hi")

    replies = await dispatcher_for(MeddlingClassifier(session_factory)).handle_message(PHONE, "hi")

    assert replies == [messages.RESEND_LAST]
    assert (await load_session(PHONE)).state == SessionState.LOGGING_IN


@pytest.mark.asyncio
async def test_expired_external_token_logs_user_out(dispatcher_for, domain, session_factory, load_session):
    dispatcher = dispatcher_for()
    await _login(dispatcher, domain)

    async with session_factory() as other:
        store = SessionStore(other)
        row = await store.load(PHONE)
        data = SessionData.load(row.data)
        data.external_token.created_at = utcnow() - timedelta(minutes=61)
        await store.save(row, row.state, data)

    domain.fail("refresh_token", TransientError("down"), TransientError("down"), TransientError("down"))
    replies = await dispatcher_for().handle_message(PHONE, "search zinc")

    assert replies == [messages.SESSION_EXPIRED]
    session = await load_session(PHONE)
    assert session.state == SessionState.NEW
    assert session.data == {}


@pytest.mark.asyncio
async def test_external_token_refreshed_before_expiry(dispatcher_for, domain, session_factory, load_session):
    dispatcher = dispatcher_for()
    await _login(dispatcher, domain)

    async with session_factory() as other:
        store = SessionStore(other)
        row = await store.load(PHONE)
        data = SessionData.load(row.data)
        data.external_token.created_at = utcnow() - timedelta(minutes=57)
        await store.save(row, row.state, data)

    await dispatcher_for().handle_message(PHONE, "search zinc")

    session = await load_session(PHONE)
    assert session.data["external_token"]["value"] == "ext-token-7-refreshed"


@pytest.mark.asyncio
async def test_identity_is_normalised(dispatcher_for, load_session):
    dispatcher = dispatcher_for()
    await dispatcher.handle_message("whatsapp:+234 800 000 0005", "hi")
    assert await load_session(PHONE) is not None


@pytest.mark.asyncio
async def test_registration_lands_despite_a_concurrent_write(dispatcher_for, domain, mailer, session_factory, load_session):
    await dispatcher_for().handle_message(PHONE, "register Ada Obi ada@example.com secret123")
    register_user = domain.register_user

    async def register_then_touch_session(payload):
        auth = await register_user(payload)
        async with session_factory() as other:
            store = SessionStore(other)
            row = await store.load(PHONE)
            await store.save(row, row.state, SessionData.load(row.data))
        return auth

    domain.register_user = register_then_touch_session
    replies = await dispatcher_for().handle_message(PHONE, mailer.last_code)

    assert "Your account is ready" in replies[0]
    session = await load_session(PHONE)
    assert session.state == SessionState.LOGGED_IN
    assert session.data["local_token"]["value"]
    assert session.data["external_token"]["value"].startswith("ext-token-")
    assert "registration" not in session.data
