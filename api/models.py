"""
API request and response models for KeyGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
keytrack/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import OTPPurpose
from core.models import Role
from keytrack.models import MAX_ALLOWED_MINUTES, MIN_ALLOWED_MINUTES, KeyCategory, KeyStatus

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
OTP_PATTERN = r"^\d{4,10}$"

_Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=255)]
_Code = Annotated[str, Field(pattern=OTP_PATTERN)]


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return str(value).strip().lower()


class SimpleAuthRequest(_EmailBody):
    """Request body for POST /api/v1/auth/simple-auth."""


class OTPRequest(_EmailBody):
    """Request body for POST /api/v1/auth/request-otp."""

    purpose: OTPPurpose = OTPPurpose.login


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/auth/login."""

    otp: _Code


class VerifyEmailRequest(_EmailBody):
    """Request body for POST /api/v1/auth/verify-otp."""

    otp: _Code


class RegisterRequest(_EmailBody):
    """Request body for POST /api/v1/auth/register."""

    name: str = Field(min_length=1, max_length=100)
    department: str = Field(min_length=1, max_length=100)
    role: Role = Role.faculty
    employee_id: Optional[str] = Field(default=None, max_length=50)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    id: int
    email: str
    name: str
    role: Role
    department: str
    employee_id: Optional[str] = None
    is_active: bool
    is_email_verified: bool
    last_login: Optional[str] = None
    created_at: str = ""


class ChallengeResponse(BaseModel):
    """Returned whenever a code has been issued. The code itself is never in the response."""

    email: str
    purpose: OTPPurpose
    expires_at: str
    delivered: bool
    created: bool = False
    identity: Optional[IdentityResponse] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    identity: IdentityResponse


class SessionResponse(BaseModel):
    is_authenticated: bool
    identity: Optional[IdentityResponse] = None


class RouteAccessResponse(BaseModel):
    path: str
    role: Role
    allowed: bool


class CapabilitiesResponse(BaseModel):
    role: Role
    level: int
    capabilities: list[str]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class IdentityPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, min_length=1, max_length=100)
    employee_id: Optional[str] = Field(default=None, max_length=50)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Keys -- requests
# ---------------------------------------------------------------------------


class KeyCreate(BaseModel):
    """Request body for POST /api/v1/keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    key_id: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    department: str = Field(min_length=1, max_length=100)
    category: KeyCategory = KeyCategory.other
    location: str = Field(default="", max_length=200)
    description: str = Field(default="", max_length=500)
    max_allowed_minutes: int = Field(default=480, ge=MIN_ALLOWED_MINUTES, le=MAX_ALLOWED_MINUTES)
    allowed_roles: list[Role] = Field(default_factory=list)
    qr_code: str = Field(default="", max_length=100)


class KeyPatch(BaseModel):
    """Request body for PATCH /api/v1/keys/{key_id}. Status is not editable here."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[KeyCategory] = None
    location: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    max_allowed_minutes: Optional[int] = Field(default=None, ge=MIN_ALLOWED_MINUTES, le=MAX_ALLOWED_MINUTES)
    allowed_roles: Optional[list[Role]] = None
    qr_code: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None


class AssignRequest(BaseModel):
    """Request body for POST /api/v1/keys/{key_id}/assign.

    holder_id omitted means "assign to me" (a self-request).
    duration_minutes omitted means the key's maximum.
    """

    holder_id: Optional[int] = None
    purpose: Optional[str] = Field(default=None, max_length=200)
    duration_minutes: Optional[int] = None


class MaintenanceRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class IncidentRequest(BaseModel):
    status: Literal["lost", "damaged"]
    notes: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Keys -- responses
# ---------------------------------------------------------------------------


class AssignmentResponse(BaseModel):
    holder_id: int
    assigned_at: str
    expected_return_at: str
    purpose: str


class KeyResponse(BaseModel):
    key_id: str
    name: str
    department: str
    category: KeyCategory
    location: str
    description: str
    status: KeyStatus
    is_active: bool
    max_allowed_minutes: int
    allowed_roles: list[Role]
    qr_code: str
    assignment: Optional[AssignmentResponse] = None
    is_overdue: bool = False
    minutes_remaining: Optional[int] = None
    last_maintenance: Optional[str] = None
    maintenance_notes: Optional[str] = None
    version: int
    updated_at: str = ""


class KeyEventResponse(BaseModel):
    action: str
    actor_id: Optional[int] = None
    holder_id: Optional[int] = None
    from_status: Optional[KeyStatus] = None
    to_status: KeyStatus
    notes: Optional[str] = None
    occurred_at: str


class KeyStatsResponse(BaseModel):
    by_department: dict[str, dict[str, int]]
    by_category: dict[str, dict[str, int]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Common
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
