from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional

class Page(BaseModel):
    """One page of a paginated domain list."""

    model_config = ConfigDict(populate_by_name=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    page: int = 1
    total_pages: int = Field(1, alias="totalPages")
    page_size: int = Field(5, alias="pageSize")

    @field_validator("total_pages")
    @classmethod
    def at_least_one_page(cls, v: int) -> int:
        return max(1, v)

class AuthResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    token: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

class RegistrationPayload(BaseModel):
    name: str
    email: str
    password: str
    phone: str
