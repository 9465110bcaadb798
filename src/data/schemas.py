"""
Recurring Tasks — Document decode/validate boundary.

Every stored document passes through exactly one pydantic model on its way in
and out of the store. Malformed data stops here with a DecodeError instead of
leaking half-populated objects into the resolver.

Document shapes (camelCase, as stored):

    templates: {id, ownerUserId, ownerGroupId, title, description,
                rule: {kind, interval?, weekdays?, monthlyDay?, completionGated?},
                startDate, isActive, createdAt, updatedAt}
    tasks:     {id, templateId, ownerUserId, ownerGroupId, title, description,
                scheduledDate, completedAt, completedByMemberId, isDeleted,
                ruleSnapshot, createdAt, updatedAt}
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.data.models import (
    Daily,
    Group,
    GroupRole,
    IntervalDays,
    MonthlyOnDay,
    MonthlyOnLastDay,
    NoRepeat,
    RecurrenceRule,
    TaskInstance,
    Template,
    User,
    WeeklyOnWeekdays,
)


class DecodeError(Exception):
    """Raised when a stored document cannot be decoded into a model."""


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Recurrence rule
# ---------------------------------------------------------------------------


class RuleDocument(_Document):
    """Stored form of a RecurrenceRule.

    JSON example:
    {
        "kind": "weekly",
        "weekdays": [2, 4]
    }
    """
    kind: Literal["none", "daily", "weekly", "monthly", "monthlyLastDay", "interval"]
    interval: int | None = None
    weekdays: list[int] | None = None
    monthly_day: int | None = Field(default=None, alias="monthlyDay")
    completion_gated: bool = Field(default=False, alias="completionGated")

    @field_validator("weekdays")
    @classmethod
    def check_weekdays(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return v
        bad = [d for d in v if not 1 <= d <= 7]
        if bad:
            raise ValueError(f"weekdays must be 1..7, got {bad}")
        return sorted(set(v))

    @model_validator(mode="after")
    def check_parameters(self) -> RuleDocument:
        if self.kind == "weekly" and self.weekdays is None:
            raise ValueError("weekly rule requires 'weekdays'")
        if self.kind == "monthly":
            if self.monthly_day is None:
                raise ValueError("monthly rule requires 'monthlyDay'")
            if not 1 <= self.monthly_day <= 31:
                raise ValueError(f"monthlyDay must be 1..31, got {self.monthly_day}")
        if self.kind == "interval" and (self.interval is None or self.interval <= 0):
            raise ValueError(f"interval rule requires a positive 'interval', got {self.interval}")
        return self

    def to_rule(self) -> RecurrenceRule:
        if self.kind == "daily":
            return Daily()
        if self.kind == "weekly":
            return WeeklyOnWeekdays(frozenset(self.weekdays))
        if self.kind == "monthly":
            return MonthlyOnDay(self.monthly_day)
        if self.kind == "monthlyLastDay":
            return MonthlyOnLastDay()
        if self.kind == "interval":
            return IntervalDays(self.interval, completion_gated=self.completion_gated)
        return NoRepeat()

    @classmethod
    def from_rule(cls, rule: RecurrenceRule) -> RuleDocument:
        if isinstance(rule, WeeklyOnWeekdays):
            return cls(kind="weekly", weekdays=sorted(rule.weekdays))
        if isinstance(rule, MonthlyOnDay):
            return cls(kind="monthly", monthly_day=rule.day)
        if isinstance(rule, IntervalDays):
            return cls(kind="interval", interval=rule.n, completion_gated=rule.completion_gated)
        return cls(kind=rule.kind)


def decode_rule(data: Any) -> RecurrenceRule:
    """Decode a stored rule map into its tagged variant."""
    try:
        return RuleDocument.model_validate(data).to_rule()
    except ValidationError as exc:
        raise DecodeError(f"Invalid recurrence rule {data!r}: {exc}") from exc


def encode_rule(rule: RecurrenceRule) -> dict:
    return RuleDocument.from_rule(rule).model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# templates
# ---------------------------------------------------------------------------


class TemplateDocument(_Document):
    id: str
    owner_user_id: str | None = Field(default=None, alias="ownerUserId")
    owner_group_id: str | None = Field(default=None, alias="ownerGroupId")
    title: str
    description: str = ""
    rule: RuleDocument
    start_date: date | None = Field(default=None, alias="startDate")
    is_active: bool = Field(default=True, alias="isActive")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @model_validator(mode="after")
    def check_owner(self) -> TemplateDocument:
        if (self.owner_user_id is None) == (self.owner_group_id is None):
            raise ValueError("exactly one of ownerUserId / ownerGroupId must be set")
        return self

    def to_model(self) -> Template:
        return Template(
            id=self.id,
            title=self.title,
            rule=self.rule.to_rule(),
            owner_user_id=self.owner_user_id,
            owner_group_id=self.owner_group_id,
            description=self.description,
            start_date=self.start_date,
            is_active=self.is_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def decode_template(data: Any) -> Template:
    try:
        return TemplateDocument.model_validate(data).to_model()
    except ValidationError as exc:
        raise DecodeError(f"Invalid template document {_doc_id(data)}: {exc}") from exc


# ---------------------------------------------------------------------------
# tasks
# ---------------------------------------------------------------------------


class TaskDocument(_Document):
    id: str
    template_id: str | None = Field(default=None, alias="templateId")
    owner_user_id: str | None = Field(default=None, alias="ownerUserId")
    owner_group_id: str | None = Field(default=None, alias="ownerGroupId")
    title: str
    description: str = ""
    scheduled_date: date = Field(alias="scheduledDate")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    completed_by_member_id: str | None = Field(default=None, alias="completedByMemberId")
    is_deleted: bool = Field(default=False, alias="isDeleted")
    rule_snapshot: RuleDocument | None = Field(default=None, alias="ruleSnapshot")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @model_validator(mode="after")
    def check_owner(self) -> TaskDocument:
        if (self.owner_user_id is None) == (self.owner_group_id is None):
            raise ValueError("exactly one of ownerUserId / ownerGroupId must be set")
        return self

    def to_model(self) -> TaskInstance:
        return TaskInstance(
            id=self.id,
            title=self.title,
            scheduled_date=self.scheduled_date,
            template_id=self.template_id,
            owner_user_id=self.owner_user_id,
            owner_group_id=self.owner_group_id,
            description=self.description,
            completed_at=self.completed_at,
            completed_by_member_id=self.completed_by_member_id,
            is_deleted=self.is_deleted,
            rule_snapshot=self.rule_snapshot.to_rule() if self.rule_snapshot else None,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def decode_task(data: Any) -> TaskInstance:
    try:
        return TaskDocument.model_validate(data).to_model()
    except ValidationError as exc:
        raise DecodeError(f"Invalid task document {_doc_id(data)}: {exc}") from exc


# ---------------------------------------------------------------------------
# groups / users
# ---------------------------------------------------------------------------


class GroupDocument(_Document):
    id: str
    name: str
    member_roles: dict[str, GroupRole] = Field(default_factory=dict, alias="memberRoles")
    is_active: bool = Field(default=True, alias="isActive")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    def to_model(self) -> Group:
        return Group(
            id=self.id,
            name=self.name,
            member_roles=dict(self.member_roles),
            is_active=self.is_active,
            created_at=self.created_at,
        )


def decode_group(data: Any) -> Group:
    try:
        return GroupDocument.model_validate(data).to_model()
    except ValidationError as exc:
        raise DecodeError(f"Invalid group document {_doc_id(data)}: {exc}") from exc


class UserDocument(_Document):
    id: str
    display_name: str = Field(alias="displayName")
    push_token: str | None = Field(default=None, alias="pushToken")
    morning_enabled: bool = Field(default=True, alias="morningEnabled")
    morning_hour: int = Field(default=7, ge=0, le=23, alias="morningHour")
    evening_enabled: bool = Field(default=True, alias="eveningEnabled")
    evening_hour: int = Field(default=18, ge=0, le=23, alias="eveningHour")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    def to_model(self) -> User:
        return User(**self.model_dump())


def decode_user(data: Any) -> User:
    try:
        return UserDocument.model_validate(data).to_model()
    except ValidationError as exc:
        raise DecodeError(f"Invalid user document {_doc_id(data)}: {exc}") from exc


def _doc_id(data: Any) -> str:
    if isinstance(data, dict):
        return repr(data.get("id", "?"))
    return "?"
