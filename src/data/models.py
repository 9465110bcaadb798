"""
Recurring Tasks — Data Models.

Templates are the user-authored recurrence definitions; task instances are the
dated, completable rows generated from them. Recurrence rules are a closed,
tagged set of frozen dataclasses — exactly one case is active per template.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Union


# ---------------------------------------------------------------------------
# Recurrence rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoRepeat:
    """Single occurrence, no successor."""

    kind: str = field(default="none", init=False)


@dataclass(frozen=True)
class Daily:
    kind: str = field(default="daily", init=False)


@dataclass(frozen=True)
class WeeklyOnWeekdays:
    """Repeats on the given ISO weekdays (1 = Monday … 7 = Sunday)."""

    weekdays: frozenset[int] = frozenset()
    kind: str = field(default="weekly", init=False)


@dataclass(frozen=True)
class MonthlyOnDay:
    """Repeats on a fixed day of month. Days above 28 are clamped to 28."""

    day: int
    kind: str = field(default="monthly", init=False)


@dataclass(frozen=True)
class MonthlyOnLastDay:
    kind: str = field(default="monthlyLastDay", init=False)


@dataclass(frozen=True)
class IntervalDays:
    """Repeats every ``n`` days.

    When ``completion_gated`` is set there is no calendar-time successor: the
    next instance is only created once the current one is completed, counted
    from the completion date.
    """

    n: int
    completion_gated: bool = False
    kind: str = field(default="interval", init=False)


RecurrenceRule = Union[
    NoRepeat, Daily, WeeklyOnWeekdays, MonthlyOnDay, MonthlyOnLastDay, IntervalDays,
]


def is_completion_gated(rule: RecurrenceRule) -> bool:
    return isinstance(rule, IntervalDays) and rule.completion_gated


# ---------------------------------------------------------------------------
# Templates and task instances
# ---------------------------------------------------------------------------


@dataclass
class Template:
    """A recurrence definition owned by a user or by a group."""

    id: str
    title: str
    rule: RecurrenceRule
    owner_user_id: str | None = None
    owner_group_id: str | None = None
    description: str = ""
    start_date: date | None = None    # no instance is generated before this day
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_group_owned(self) -> bool:
        return self.owner_group_id is not None

    @property
    def owner_key(self) -> str:
        """Group id for group templates, user id otherwise."""
        return self.owner_group_id if self.owner_group_id is not None else self.owner_user_id


@dataclass
class TaskInstance:
    """A single dated materialization of a template (or an ad-hoc task)."""

    id: str
    title: str
    scheduled_date: date
    template_id: str | None = None          # None for ad-hoc tasks
    owner_user_id: str | None = None
    owner_group_id: str | None = None
    description: str = ""
    completed_at: datetime | None = None
    completed_by_member_id: str | None = None  # group tasks only
    is_deleted: bool = False
    rule_snapshot: RecurrenceRule | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_group_task(self) -> bool:
        return self.owner_group_id is not None

    @property
    def owner_key(self) -> str:
        return self.owner_group_id if self.owner_group_id is not None else self.owner_user_id

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def state(self) -> TaskState:
        if self.is_deleted:
            return TaskState.SOFT_DELETED
        if self.is_completed:
            return TaskState.COMPLETED
        return TaskState.SCHEDULED


@dataclass(frozen=True)
class VirtualInstance:
    """A display-only projection beyond the persisted horizon. Never stored."""

    template_id: str
    title: str
    scheduled_date: date
    owner_user_id: str | None = None
    owner_group_id: str | None = None
    description: str = ""
    rule_snapshot: RecurrenceRule | None = None

    @property
    def id(self) -> str:
        # Deterministic so clients can de-duplicate against real instances
        return f"virtual:{self.template_id}:{self.scheduled_date.isoformat()}"

    @property
    def owner_key(self) -> str:
        return self.owner_group_id if self.owner_group_id is not None else self.owner_user_id


class TaskState(Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    SOFT_DELETED = "soft_deleted"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive calendar-date range."""

    start: date
    end: date

    @classmethod
    def from_today(cls, today: date, days: int) -> DateWindow:
        return cls(start=today, end=today + timedelta(days=days))

    def __contains__(self, d: date) -> bool:
        return self.start <= d <= self.end


# ---------------------------------------------------------------------------
# Groups and users
# ---------------------------------------------------------------------------


class GroupRole(Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def can_manage_templates(self) -> bool:
        """Template create/update/delete and on-demand generation."""
        return self in (GroupRole.OWNER, GroupRole.ADMIN)

    @property
    def can_delete_tasks(self) -> bool:
        return self in (GroupRole.OWNER, GroupRole.ADMIN)

    @property
    def can_complete_tasks(self) -> bool:
        return True


@dataclass
class Group:
    """A shared space whose members see and complete the same tasks."""

    id: str
    name: str
    member_roles: dict[str, GroupRole] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime | None = None

    @property
    def member_ids(self) -> list[str]:
        return sorted(self.member_roles)

    def role_of(self, user_id: str) -> GroupRole | None:
        return self.member_roles.get(user_id)


@dataclass
class User:
    """A registered user with push token and daily notification settings."""

    id: str
    display_name: str
    push_token: str | None = None
    morning_enabled: bool = True
    morning_hour: int = 7
    evening_enabled: bool = True
    evening_hour: int = 18
    created_at: datetime | None = None

    def notifies_at(self, hour: int) -> bool:
        return (self.morning_enabled and self.morning_hour == hour) or (
            self.evening_enabled and self.evening_hour == hour
        )
