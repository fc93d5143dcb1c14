"""
Vault Models — credential records, listings and annotations.

Records are pydantic models. The envelope is carried as an opaque
``Envelope`` and is only interpreted by the crypto and legacy modules.
"""
import uuid
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from datetime import datetime

import orjson
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .crypto import Envelope
from .exceptions import ValidationError

MAX_EXTENSION_ENTRIES = 16
MAX_EXTENSION_BYTES = 1024


class ServiceName(str, Enum):
    """Closed set of third-party providers a credential may belong to."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    CUSTOM = "custom"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    REVOKED = "revoked"


# ---------------------------------------------------------------------------
# Annotations: closed tagged union of known metadata kinds
# ---------------------------------------------------------------------------

class LabelAnnotation(BaseModel):
    kind: Literal["label"] = "label"
    label: str = Field(min_length=1, max_length=64)


class EnvironmentAnnotation(BaseModel):
    kind: Literal["environment"] = "environment"
    environment: Literal["development", "staging", "production"]


class ProviderAnnotation(BaseModel):
    """Provider-side identifiers the key is scoped to."""
    kind: Literal["provider"] = "provider"
    organization_id: Optional[str] = Field(default=None, max_length=128)
    project_id: Optional[str] = Field(default=None, max_length=128)


class ExtensionAnnotation(BaseModel):
    """Bounded opaque extension: scalar values only, size-capped."""
    kind: Literal["extension"] = "extension"
    namespace: str = Field(pattern=r"^[a-z][a-z0-9_.-]{0,31}$")
    data: dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)

    @field_validator("data")
    @classmethod
    def validate_bounds(cls, v: dict) -> dict:
        if len(v) > MAX_EXTENSION_ENTRIES:
            raise ValueError(
                f"extension data cannot exceed {MAX_EXTENSION_ENTRIES} entries"
            )
        if len(orjson.dumps(v)) > MAX_EXTENSION_BYTES:
            raise ValueError(
                f"extension data cannot exceed {MAX_EXTENSION_BYTES} bytes"
            )
        return v


Annotation = Annotated[
    Union[LabelAnnotation, EnvironmentAnnotation, ProviderAnnotation, ExtensionAnnotation],
    Field(discriminator="kind"),
]

_ANNOTATIONS = TypeAdapter(list[Annotation])


def validate_annotations(raw: Optional[list]) -> list:
    """Validate caller-supplied annotations at the API boundary.

    Accepts annotation models or plain dicts carrying a ``kind`` tag.

    Raises:
        ValidationError: Unknown kind, invalid values or more than one
            extension annotation.
    """
    if not raw:
        return []
    try:
        items = _ANNOTATIONS.validate_python(
            [a.model_dump() if isinstance(a, BaseModel) else a for a in raw]
        )
    except PydanticValidationError as err:
        raise ValidationError(f"invalid annotations: {err.error_count()} error(s)") from err
    if sum(1 for a in items if a.kind == "extension") > 1:
        raise ValidationError("only one extension annotation is allowed")
    return items


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

class Validity(BaseModel):
    created_at: datetime
    rotated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rotation_reminder_at: Optional[datetime] = None


class UsageStats(BaseModel):
    usage_count: int = 0
    total_units_consumed: int = 0
    daily_used: int = 0
    daily_reset_at: Optional[datetime] = None
    daily_limit: Optional[int] = None
    last_used_at: Optional[datetime] = None


class AuditInfo(BaseModel):
    created_from_address: Optional[str] = None
    last_used_from_address: Optional[str] = None
    last_validation_at: Optional[datetime] = None
    last_validation_error: Optional[str] = None


def new_record_id() -> str:
    return str(uuid.uuid4())


class CredentialRecord(BaseModel):
    """Persisted credential. ``version`` is owned by the repository."""

    id: str = Field(default_factory=new_record_id)
    owner_id: str
    service: ServiceName
    key_name: str
    envelope: Envelope
    status: CredentialStatus = CredentialStatus.ACTIVE
    validity: Validity
    usage: UsageStats = Field(default_factory=UsageStats)
    audit: AuditInfo = Field(default_factory=AuditInfo)
    key_prefix: Optional[str] = None
    annotations: list[Annotation] = Field(default_factory=list)
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status is not CredentialStatus.REVOKED

    def is_past_expiry(self, now: datetime) -> bool:
        expires_at = self.validity.expires_at
        return expires_at is not None and now >= expires_at

    def effective_status(self, now: datetime) -> CredentialStatus:
        """Status as a reader sees it, applying lazy expiry."""
        if self.status is CredentialStatus.ACTIVE and self.is_past_expiry(now):
            return CredentialStatus.EXPIRED
        return self.status

    def to_metadata(self, now: datetime) -> "CredentialMetadata":
        return CredentialMetadata(
            id=self.id,
            service=self.service,
            key_name=self.key_name,
            key_prefix=self.key_prefix,
            status=self.effective_status(now),
            created_at=self.validity.created_at,
            rotated_at=self.validity.rotated_at,
            expires_at=self.validity.expires_at,
            rotation_reminder_at=self.validity.rotation_reminder_at,
            usage_count=self.usage.usage_count,
            total_units_consumed=self.usage.total_units_consumed,
            daily_used=self.usage.daily_used,
            daily_limit=self.usage.daily_limit,
            daily_reset_at=self.usage.daily_reset_at,
            last_used_at=self.usage.last_used_at,
            last_validation_at=self.audit.last_validation_at,
            last_validation_error=self.audit.last_validation_error,
            annotations=list(self.annotations),
        )


class CredentialMetadata(BaseModel):
    """Listing projection of a record. Never carries plaintext or envelope."""

    id: str
    service: ServiceName
    key_name: str
    key_prefix: Optional[str] = None
    status: CredentialStatus
    created_at: datetime
    rotated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rotation_reminder_at: Optional[datetime] = None
    usage_count: int = 0
    total_units_consumed: int = 0
    daily_used: int = 0
    daily_limit: Optional[int] = None
    daily_reset_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_validation_at: Optional[datetime] = None
    last_validation_error: Optional[str] = None
    annotations: list[Annotation] = Field(default_factory=list)


class CredentialStats(BaseModel):
    total_keys: int = 0
    active_keys: int = 0
    expired_keys: int = 0
    revoked_keys: int = 0
    total_usage: int = 0
    total_units: int = 0
    keys_by_service: dict[str, int] = Field(default_factory=dict)
    last_used_at: Optional[datetime] = None
