from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested JSON depth accepted in free-form request fields
MAX_JSON_DEPTH = 20
# Maximum number of locale entries in a display-name mapping
MAX_LOCALE_ENTRIES = 64


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested payloads before they reach the service layer.

    Raises:
        ValueError: If depth exceeds maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    """Registration payload.

    Field contents (email shape, name entries, password length) are checked by the
    session service so each failure maps to its own error kind.
    """

    email: str = Field(default="", max_length=1024)
    password: str = Field(default="", max_length=1024)
    name: Optional[Any] = None
    login_id: Optional[str] = Field(default=None, max_length=254)

    @field_validator("name")
    @classmethod
    def _limit_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            if len(value) > MAX_LOCALE_ENTRIES:
                raise ValueError(f"name accepts at most {MAX_LOCALE_ENTRIES} locales")
            _validate_json_depth(value)
        return value


class LoginRequest(BaseModel):
    login_id: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)


class UserInfo(BaseModel):
    id: str
    login_id: str
    name: Dict[str, str]
    email: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class RegisterResponse(BaseModel):
    user: UserInfo
    tokens: TokenResponse
    message: str


class LoginResponse(BaseModel):
    user: UserInfo
    tokens: TokenResponse


class MeResponse(BaseModel):
    user: UserInfo
    roles: List[str]


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    store: str
    permission_rules: int
    version: str
    timestamp: str
