from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    display_name: str | None = Field(default=None, index=True)
    email: str | None = Field(default=None, index=True)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    is_privileged: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        Index("ix_user_roles_role", "role_id"),
    )

    user_id: str = Field(primary_key=True)
    role_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PageAccessRule(SQLModel, table=True):
    __tablename__ = "page_access_rules"
    __table_args__ = (
        UniqueConstraint("role_id", "page_key", name="uq_page_access_rules_role_page"),
        ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        Index("ix_page_access_rules_role", "role_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    role_id: str
    page_key: str
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str
    password: str
    display_name: str | None = None
    email: str | None = None
    is_active: bool = True


class UserRead(ORMReadModel):
    id: str
    username: str
    display_name: str | None = None
    email: str | None = None
    is_active: bool
    created_at: datetime


class RoleCreate(BaseModel):
    name: str
    description: str | None = None
    is_privileged: bool = False


class RoleRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    is_privileged: bool
    created_at: datetime


class BootstrapAdminRequest(BaseModel):
    username: str
    password: str


class DevLoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role_ids: list[str]


class UserRoleLinkRead(BaseModel):
    user_id: str
    role_id: str
    assigned: bool
    changed: bool


class AccessReason(StrEnum):
    UNREGISTERED = "UNREGISTERED"
    PRIVILEGED_BYPASS = "PRIVILEGED_BYPASS"
    WILDCARD = "WILDCARD"
    RULE = "RULE"
    NO_RULE = "NO_RULE"
    NO_ROLES = "NO_ROLES"
    FETCH_ERROR = "FETCH_ERROR"
    MALFORMED = "MALFORMED"


class AccessDecisionRead(BaseModel):
    path: str
    allowed: bool
    reason: AccessReason
    fetch_error: str | None = None


class NavItemRead(BaseModel):
    page_key: str
    label: str


class NavSectionRead(BaseModel):
    id: str
    label: str
    items: list[NavItemRead]


class AccessProfileRead(BaseModel):
    user_id: str
    roles: list[RoleRead]
    has_wildcard: bool
    allowed_paths: list[str]
    fetch_error: str | None = None


class PermissionRuleRead(BaseModel):
    id: str
    role_id: str
    page_key: str


class MatrixPageRead(BaseModel):
    page_key: str
    label: str


class MatrixSectionRead(BaseModel):
    label: str
    pages: list[MatrixPageRead]


class MatrixRoleRead(BaseModel):
    id: str
    name: str
    rank: int
    page_keys: list[str]
    has_wildcard: bool


class MatrixRead(BaseModel):
    version: int | None
    sections: list[MatrixSectionRead]
    roles: list[MatrixRoleRead]
    rules: list[PermissionRuleRead]


class PendingChangeItem(BaseModel):
    role_id: str
    page_key: str
    allowed: bool


class MatrixCommitRequest(BaseModel):
    changes: list[PendingChangeItem] = PydanticField(default_factory=list)


class OpErrorRead(BaseModel):
    role_id: str
    page_key: str
    op: str
    message: str


class MatrixCommitRead(BaseModel):
    applied: int
    operations: int
    errors: list[OpErrorRead]
    version: int | None
