from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, Dict, Any, List
from carebot.models.session import SessionState
import enum

SESSION_DATA_VERSION = 1

class ListKind(str, enum.Enum):
    PRODUCTS = "products"
    HEALTHCARE_PRODUCTS = "healthcare_products"
    DOCTORS = "doctors"
    DIAGNOSTIC_TESTS = "diagnostic_tests"
    APPOINTMENTS = "appointments"

class TokenSource(str, enum.Enum):
    LOCAL = "local"
    EXTERNAL = "external"

class TokenTrack(BaseModel):
    value: str
    source: TokenSource
    created_at: datetime
    last_used: datetime

class PaginationCursor(BaseModel):
    current_page: int = 1
    total_pages: int = 1
    page_size: int
    items: List[Dict[str, Any]] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)

class PendingRegistration(BaseModel):
    address: str
    purpose: str = "registration"
    # Encrypted registration payload; the password never sits in session data in clear
    snapshot: str
    issued_at: datetime
    attempts: int = 0
    delivery_failed: bool = False

class PendingAttachment(BaseModel):
    url: str
    content_type: Optional[str] = None
    received_at: datetime

class SupportHandoff(BaseModel):
    role: str = "general"
    previous_state: SessionState
    started_at: datetime

class SessionData(BaseModel):
    """Everything a flow may keep between two inbound messages."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SESSION_DATA_VERSION

    user_id: Optional[str] = None
    local_token: Optional[TokenTrack] = None
    external_token: Optional[TokenTrack] = None

    registration: Optional[PendingRegistration] = None

    cursors: Dict[ListKind, PaginationCursor] = Field(default_factory=dict)
    active_list: Optional[ListKind] = None

    pending_attachment: Optional[PendingAttachment] = None
    support: Optional[SupportHandoff] = None

    last_order_id: Optional[str] = None
    last_appointment_id: Optional[str] = None
    last_cart_item: Optional[Dict[str, Any]] = None

    @classmethod
    def load(cls, raw: Optional[Dict[str, Any]]) -> "SessionData":
        return cls.model_validate(raw or {})

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)

    def token(self, source: TokenSource) -> Optional[TokenTrack]:
        return self.local_token if source == TokenSource.LOCAL else self.external_token

    def set_token(self, track: TokenTrack):
        if track.source == TokenSource.LOCAL:
            self.local_token = track
        else:
            self.external_token = track

    def set_cursor(self, kind: ListKind, cursor: PaginationCursor):
        # A new search for a list kind replaces its old cursor
        self.cursors[kind] = cursor
        self.active_list = kind

    def drop_cursor(self, kind: ListKind):
        self.cursors.pop(kind, None)
        if self.active_list == kind:
            self.active_list = None

    def active_cursor(self) -> Optional[PaginationCursor]:
        if self.active_list is None:
            return None
        return self.cursors.get(self.active_list)
