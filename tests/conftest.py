import os

# Set dummy env vars for testing
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["TWILIO_ACCOUNT_SID"] = "AC_TEST"
os.environ["TWILIO_AUTH_TOKEN"] = "AUTH_TEST"
os.environ["TWILIO_PHONE_NUMBER"] = "whatsapp:+14155238886"
os.environ["DOMAIN_API_URL"] = "http://domain.test/api"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["SUPPORT_API_KEY"] = "support-test-key"
os.environ["RETRY_INITIAL_DELAY"] = "0"
os.environ["ENVIRONMENT"] = "test"

import itertools
from collections import defaultdict
from dataclasses import dataclass

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from carebot.database import Base, get_db
from carebot.dependencies import get_classifier, get_domain_client, get_mailer, get_messenger
from carebot.exceptions import NotFoundError, RejectedError
from carebot.main import app
# Import models to ensure they are registered with Base.metadata
from carebot.models.session import ChatSession
from carebot.models.otp import OneTimeCode
from carebot.schemas.domain import AuthResult, Page
from carebot.schemas.session import ListKind, SessionData
from carebot.services.intent_classifier import RuleBasedClassifier
from carebot.services.pagination import total_pages_for
from carebot.services.session_store import SessionStore
from carebot.utils.validators import normalize_phone


class FakeDomainClient:
    """In-memory stand-in for the domain API. Queue errors per method with ``fail``."""

    def __init__(self):
        self.users = {}
        self.catalog = {kind: [] for kind in ListKind}
        self.orders = {}
        self.cart = []
        self.appointments = []
        self.attachments = []
        self.support_events = []
        self.list_requests = []
        self.calls = []
        self.failures = defaultdict(list)
        self._ids = itertools.count(1001)

    def fail(self, method, *errors):
        self.failures[method].extend(errors)

    def _call(self, method):
        self.calls.append(method)
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def find_user_by_email(self, email):
        self._call("find_user_by_email")
        if email not in self.users:
            raise NotFoundError("No user with that e-mail")
        return self.users[email]

    async def register_user(self, payload):
        self._call("register_user")
        if payload.email in self.users:
            raise RejectedError("This e-mail is already registered.")
        user = {"id": next(self._ids), **payload.model_dump()}
        self.users[payload.email] = user
        return AuthResult(userId=user["id"], token=f"ext-token-{user['id']}")

    async def login_user(self, email, password):
        self._call("login_user")
        user = self.users.get(email)
        if user is None or user["password"] != password:
            raise RejectedError("Invalid e-mail or password.")
        return AuthResult(userId=user["id"], token=f"ext-token-{user['id']}")

    async def refresh_token(self, token):
        self._call("refresh_token")
        return f"{token}-refreshed"

    async def list_page(self, kind, filters, page, page_size, token=None):
        self._call("list_page")
        self.list_requests.append((kind, dict(filters), page, page_size))
        items = self.catalog[kind]
        start = (page - 1) * page_size
        return Page(
            items=items[start:start + page_size],
            page=page,
            total_pages=total_pages_for(len(items), page_size),
            page_size=page_size,
        )

    async def add_to_cart(self, token, user_id, product_id, quantity):
        self._call("add_to_cart")
        self.cart.append((user_id, product_id, quantity))
        return {"id": next(self._ids)}

    async def place_order(self, token, user_id, address, payment_method):
        self._call("place_order")
        order_id = str(next(self._ids))
        self.orders[order_id] = {"id": order_id, "status": "pending", "address": address, "paymentMethod": payment_method}
        return self.orders[order_id]

    async def get_order(self, token, order_id):
        self._call("get_order")
        if order_id not in self.orders:
            raise NotFoundError("Order not found")
        return self.orders[order_id]

    async def create_payment_link(self, token, order_id, provider):
        self._call("create_payment_link")
        return {"link": f"https://pay.test/{provider}/{order_id}"}

    async def attach_prescription(self, token, order_id, file_url):
        self._call("attach_prescription")
        self.attachments.append((order_id, file_url))
        return {"ok": True}

    async def book_appointment(self, token, user_id, doctor_id, scheduled_at):
        self._call("book_appointment")
        appointment = {"id": next(self._ids), "doctorId": doctor_id, "scheduledAt": scheduled_at}
        self.appointments.append(appointment)
        return appointment

    async def start_support_chat(self, phone, role):
        self._call("start_support_chat")
        self.support_events.append(("start", phone, role))
        return {"ok": True}

    async def forward_support_message(self, phone, text):
        self._call("forward_support_message")
        self.support_events.append(("message", phone, text))
        return {"ok": True}

    async def end_support_chat(self, phone):
        self._call("end_support_chat")
        self.support_events.append(("end", phone, None))
        return {"ok": True}


@dataclass
class SentCode:
    email: str
    code: str
    name: str


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.failures = []

    async def send_code(self, email, code, name=""):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(SentCode(email, code, name))

    @property
    def last_code(self):
        return self.sent[-1].code


class RecordingMessenger:
    def __init__(self):
        self.sent = []

    async def send(self, identity, text):
        self.sent.append((identity, text))
        return True


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
def domain():
    return FakeDomainClient()

@pytest.fixture
def mailer():
    return RecordingMailer()

@pytest.fixture
def messenger():
    return RecordingMessenger()

@pytest_asyncio.fixture
async def client(session_factory, domain, mailer, messenger):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_domain_client] = lambda: domain
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_messenger] = lambda: messenger
    app.dependency_overrides[get_classifier] = lambda: RuleBasedClassifier()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()

@pytest.fixture
def chat(client):
    """Send one WhatsApp message through the webhook and return the TwiML body."""
    async def _send(phone, body, **extra):
        response = await client.post("/webhook", data={"From": phone, "Body": body, **extra})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        return response.text
    return _send

@pytest.fixture
def load_session(session_factory):
    async def _load(phone):
        async with session_factory() as session:
            return await SessionStore(session).load(normalize_phone(phone))
    return _load

@pytest.fixture
def edit_session(session_factory):
    """Rewrite a stored session's data in place, e.g. to age its tokens."""
    async def _edit(phone, mutate):
        async with session_factory() as session:
            store = SessionStore(session)
            row = await store.load(normalize_phone(phone))
            data = SessionData.load(row.data)
            mutate(data)
            await store.save(row, row.state, data)
    return _edit

@pytest_asyncio.fixture
async def logged_in(chat, domain):
    """A registered user who is logged in over WhatsApp."""
    phone = "whatsapp:+2348000000001"
    domain.users["ada@example.com"] = {"id": 7, "name": "Ada Obi", "email": "ada@example.com", "password": "secret123"}
    text = await chat(phone, "login ada@example.com secret123")
    assert "logged in" in text
    return phone
