"""
Recurring Tasks — SQLite document store.

One table per collection (templates, tasks, groups, users) in a single SQLite
file. Nested fields (rule, ruleSnapshot, memberRoles) are JSON text columns.
Every row is decoded through src.data.schemas, so callers only ever see
validated models.

Multi-row writes are expressed as WriteOp lists and committed with
``commit()``: one op list is one transaction, capped at the store's
single-transaction operation limit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from src.data.models import Group, GroupRole, RecurrenceRule, TaskInstance, Template, User
from src.data.schemas import (
    decode_group,
    decode_task,
    decode_template,
    decode_user,
    encode_rule,
)

logger = logging.getLogger(__name__)


class BatchLimitError(Exception):
    """Raised when a single commit exceeds the per-transaction op limit."""


@dataclass(frozen=True)
class WriteOp:
    """One statement inside a batched commit."""

    sql: str
    params: tuple
    label: str = ""


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class _SQLiteStore:
    """Shared connection handling for the collection stores."""

    def __init__(self, db_path: str | None = None, max_batch_operations: int | None = None) -> None:
        if db_path is None or max_batch_operations is None:
            from src.config import settings
            db_path = db_path or settings.DATABASE_PATH
            max_batch_operations = max_batch_operations or settings.MAX_BATCH_OPERATIONS

        self._db_path = db_path
        self.max_batch_operations = max_batch_operations
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError

    def commit(self, ops: list[WriteOp]) -> None:
        """Apply all ops in one transaction (all or nothing)."""
        if len(ops) > self.max_batch_operations:
            raise BatchLimitError(
                f"{len(ops)} operations exceed the limit of {self.max_batch_operations}"
            )
        if not ops:
            return
        with self._connect() as conn:
            for op in ops:
                conn.execute(op.sql, op.params)
        logger.debug("Committed batch of %d operations", len(ops))


# ---------------------------------------------------------------------------
# templates
# ---------------------------------------------------------------------------


class TemplateDB(_SQLiteStore):
    """Storage for recurrence templates."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS templates (
                    id              TEXT PRIMARY KEY,
                    owner_user_id   TEXT,
                    owner_group_id  TEXT,
                    title           TEXT NOT NULL,
                    description     TEXT NOT NULL DEFAULT '',
                    rule            TEXT NOT NULL,
                    start_date      TEXT,
                    is_active       INTEGER NOT NULL DEFAULT 1,
                    created_at      TEXT NOT NULL,
                    updated_at      TEXT NOT NULL
                )
            """)
        logger.debug("Templates table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_template(row: sqlite3.Row) -> Template:
        return decode_template({
            "id": row["id"],
            "ownerUserId": row["owner_user_id"],
            "ownerGroupId": row["owner_group_id"],
            "title": row["title"],
            "description": row["description"],
            "rule": json.loads(row["rule"]),
            "startDate": row["start_date"],
            "isActive": bool(row["is_active"]),
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        })

    def add_template(
        self,
        title: str,
        rule: RecurrenceRule,
        start_date: date,
        owner_user_id: str | None = None,
        owner_group_id: str | None = None,
        description: str = "",
        created_at: datetime | None = None,
    ) -> Template:
        """Insert a new active template anchored at start_date.

        start_date is a calendar day in the service timezone.
        """
        now = created_at or utcnow()
        template = Template(
            id=new_id(),
            title=title,
            rule=rule,
            owner_user_id=owner_user_id,
            owner_group_id=owner_group_id,
            description=description,
            start_date=start_date,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.commit([self.op_save(template)])
        logger.info("Template added: %s '%s' (%s)", template.id, title, rule.kind)
        return template

    @staticmethod
    def op_save(template: Template) -> WriteOp:
        return WriteOp(
            """
            INSERT OR REPLACE INTO templates
                (id, owner_user_id, owner_group_id, title, description, rule,
                 start_date, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template.id, template.owner_user_id, template.owner_group_id,
                template.title, template.description, json.dumps(encode_rule(template.rule)),
                _iso(template.start_date), int(template.is_active),
                _iso(template.created_at or utcnow()), _iso(template.updated_at or utcnow()),
            ),
            label=f"save template {template.id}",
        )

    @staticmethod
    def op_delete(template_id: str) -> WriteOp:
        return WriteOp(
            "DELETE FROM templates WHERE id = ?", (template_id,),
            label=f"delete template {template_id}",
        )

    def get_template(self, template_id: str) -> Template | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM templates WHERE id = ?", (template_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_template(row)

    def list_active(
        self,
        owner_user_id: str | None = None,
        owner_group_id: str | None = None,
    ) -> list[Template]:
        """Active templates, optionally scoped to one owner."""
        query = "SELECT * FROM templates WHERE is_active = 1"
        params: list = []
        if owner_user_id is not None:
            query += " AND owner_user_id = ?"
            params.append(owner_user_id)
        if owner_group_id is not None:
            query += " AND owner_group_id = ?"
            params.append(owner_group_id)
        query += " ORDER BY created_at"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_template(r) for r in rows]


# ---------------------------------------------------------------------------
# tasks
# ---------------------------------------------------------------------------


class TaskDB(_SQLiteStore):
    """Storage for task instances."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id                      TEXT PRIMARY KEY,
                    template_id             TEXT,
                    owner_user_id           TEXT,
                    owner_group_id          TEXT,
                    title                   TEXT NOT NULL,
                    description             TEXT NOT NULL DEFAULT '',
                    scheduled_date          TEXT NOT NULL,
                    completed_at            TEXT,
                    completed_by_member_id  TEXT,
                    is_deleted              INTEGER NOT NULL DEFAULT 0,
                    rule_snapshot           TEXT,
                    created_at              TEXT NOT NULL,
                    updated_at              TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_template_date "
                "ON tasks (template_id, scheduled_date)"
            )
        logger.debug("Tasks table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> TaskInstance:
        snapshot = row["rule_snapshot"]
        return decode_task({
            "id": row["id"],
            "templateId": row["template_id"],
            "ownerUserId": row["owner_user_id"],
            "ownerGroupId": row["owner_group_id"],
            "title": row["title"],
            "description": row["description"],
            "scheduledDate": row["scheduled_date"],
            "completedAt": row["completed_at"],
            "completedByMemberId": row["completed_by_member_id"],
            "isDeleted": bool(row["is_deleted"]),
            "ruleSnapshot": json.loads(snapshot) if snapshot else None,
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        })

    # -- write ops ----------------------------------------------------------

    @staticmethod
    def op_insert(task: TaskInstance) -> WriteOp:
        now = utcnow()
        snapshot = json.dumps(encode_rule(task.rule_snapshot)) if task.rule_snapshot else None
        return WriteOp(
            """
            INSERT INTO tasks
                (id, template_id, owner_user_id, owner_group_id, title, description,
                 scheduled_date, completed_at, completed_by_member_id, is_deleted,
                 rule_snapshot, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id, task.template_id, task.owner_user_id, task.owner_group_id,
                task.title, task.description, task.scheduled_date.isoformat(),
                _iso(task.completed_at), task.completed_by_member_id, int(task.is_deleted),
                snapshot, _iso(task.created_at or now), _iso(task.updated_at or now),
            ),
            label=f"insert task {task.id}",
        )

    @staticmethod
    def op_update_text(task_id: str, title: str, description: str) -> WriteOp:
        return WriteOp(
            "UPDATE tasks SET title = ?, description = ?, updated_at = ? WHERE id = ?",
            (title, description, _iso(utcnow()), task_id),
            label=f"retitle task {task_id}",
        )

    @staticmethod
    def op_soft_delete(task_id: str) -> WriteOp:
        return WriteOp(
            "UPDATE tasks SET is_deleted = 1, updated_at = ? WHERE id = ? AND is_deleted = 0",
            (_iso(utcnow()), task_id),
            label=f"soft-delete task {task_id}",
        )

    @staticmethod
    def op_delete(task_id: str) -> WriteOp:
        return WriteOp(
            "DELETE FROM tasks WHERE id = ?", (task_id,),
            label=f"delete task {task_id}",
        )

    def add_task(self, task: TaskInstance) -> TaskInstance:
        """Create-only insert. Raises sqlite3.IntegrityError on a duplicate id."""
        self.commit([self.op_insert(task)])
        return task

    # -- state transitions --------------------------------------------------

    def mark_completed(
        self,
        task_id: str,
        completed_at: datetime,
        completed_by_member_id: str | None = None,
    ) -> tuple[TaskInstance, TaskInstance] | None:
        """Scheduled -> Completed. Returns (before, after), or None when the
        task is missing or not in the Scheduled state."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE tasks SET completed_at = ?, completed_by_member_id = ?, updated_at = ?
                WHERE id = ? AND completed_at IS NULL AND is_deleted = 0
                """,
                (_iso(completed_at), completed_by_member_id, _iso(utcnow()), task_id),
            )
            if cursor.rowcount == 0:
                return None
            after_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

        before, after = self._row_to_task(row), self._row_to_task(after_row)
        logger.info("Task %s completed (by %s)", task_id, completed_by_member_id or "owner")
        return before, after

    def soft_delete(self, task_id: str) -> tuple[TaskInstance, TaskInstance] | None:
        """Scheduled -> SoftDeleted. Returns (before, after), or None."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                """
                UPDATE tasks SET is_deleted = 1, updated_at = ?
                WHERE id = ? AND completed_at IS NULL AND is_deleted = 0
                """,
                (_iso(utcnow()), task_id),
            )
            if cursor.rowcount == 0:
                return None
            after_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

        logger.info("Task %s soft-deleted", task_id)
        return self._row_to_task(row), self._row_to_task(after_row)

    # -- reads --------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskInstance | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_for_template(
        self,
        template_id: str,
        owner_key: str | None = None,
        start: date | None = None,
        end: date | None = None,
        include_deleted: bool = True,
    ) -> list[TaskInstance]:
        """Instances of one template, optionally bounded to [start, end]."""
        query = "SELECT * FROM tasks WHERE template_id = ?"
        params: list[Any] = [template_id]
        if owner_key is not None:
            query += " AND COALESCE(owner_group_id, owner_user_id) = ?"
            params.append(owner_key)
        if start is not None:
            query += " AND scheduled_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND scheduled_date <= ?"
            params.append(end.isoformat())
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY scheduled_date"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def list_for_owners(
        self,
        user_id: str | None = None,
        group_ids: Iterable[str] = (),
        start: date | None = None,
        end: date | None = None,
        include_deleted: bool = False,
        open_only: bool = False,
    ) -> list[TaskInstance]:
        """Tasks owned by a user and/or any of the given groups."""
        owner_clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            owner_clauses.append("owner_user_id = ?")
            params.append(user_id)
        group_ids = list(group_ids)
        if group_ids:
            owner_clauses.append(
                f"owner_group_id IN ({', '.join('?' for _ in group_ids)})"
            )
            params.extend(group_ids)
        if not owner_clauses:
            return []

        query = f"SELECT * FROM tasks WHERE ({' OR '.join(owner_clauses)})"
        if start is not None:
            query += " AND scheduled_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND scheduled_date <= ?"
            params.append(end.isoformat())
        if not include_deleted:
            query += " AND is_deleted = 0"
        if open_only:
            query += " AND completed_at IS NULL"
        query += " ORDER BY scheduled_date, created_at"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]


# ---------------------------------------------------------------------------
# groups
# ---------------------------------------------------------------------------


class GroupDB(_SQLiteStore):
    """Storage for groups and their member roles."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS groups (
                    id            TEXT PRIMARY KEY,
                    name          TEXT NOT NULL,
                    member_roles  TEXT NOT NULL DEFAULT '{}',
                    is_active     INTEGER NOT NULL DEFAULT 1,
                    created_at    TEXT NOT NULL
                )
            """)
        logger.debug("Groups table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_group(row: sqlite3.Row) -> Group:
        return decode_group({
            "id": row["id"],
            "name": row["name"],
            "memberRoles": json.loads(row["member_roles"]),
            "isActive": bool(row["is_active"]),
            "createdAt": row["created_at"],
        })

    def create_group(self, name: str, owner_id: str) -> Group:
        group = Group(
            id=new_id(),
            name=name,
            member_roles={owner_id: GroupRole.OWNER},
            created_at=utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO groups (id, name, member_roles, is_active, created_at) "
                "VALUES (?, ?, ?, 1, ?)",
                (group.id, name, self._dump_roles(group.member_roles), _iso(group.created_at)),
            )
        logger.info("Group created: %s '%s' owned by %s", group.id, name, owner_id)
        return group

    @staticmethod
    def _dump_roles(member_roles: dict[str, GroupRole]) -> str:
        return json.dumps({uid: role.value for uid, role in member_roles.items()})

    def get_group(self, group_id: str) -> Group | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM groups WHERE id = ?", (group_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_group(row)

    def set_member_role(self, group_id: str, user_id: str, role: GroupRole) -> Group:
        """Add a member or change an existing member's role."""
        group = self.get_group(group_id)
        if group is None:
            raise ValueError(f"Group {group_id} not found")
        group.member_roles[user_id] = role
        self._save_roles(group)
        logger.info("Group %s: %s is now %s", group_id, user_id, role.value)
        return group

    def add_member(self, group_id: str, user_id: str) -> Group:
        return self.set_member_role(group_id, user_id, GroupRole.MEMBER)

    def remove_member(self, group_id: str, user_id: str) -> Group:
        group = self.get_group(group_id)
        if group is None:
            raise ValueError(f"Group {group_id} not found")
        group.member_roles.pop(user_id, None)
        self._save_roles(group)
        logger.info("Group %s: %s left", group_id, user_id)
        return group

    def _save_roles(self, group: Group) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE groups SET member_roles = ? WHERE id = ?",
                (self._dump_roles(group.member_roles), group.id),
            )

    def list_groups_for_user(self, user_id: str) -> list[Group]:
        """Active groups the user currently belongs to."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM groups WHERE is_active = 1 ORDER BY created_at"
            ).fetchall()
        groups = [self._row_to_group(r) for r in rows]
        return [g for g in groups if user_id in g.member_roles]


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------


class UserDB(_SQLiteStore):
    """Storage for registered users and their notification settings."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id               TEXT PRIMARY KEY,
                    display_name     TEXT NOT NULL,
                    push_token       TEXT,
                    morning_enabled  INTEGER NOT NULL DEFAULT 1,
                    morning_hour     INTEGER NOT NULL DEFAULT 7,
                    evening_enabled  INTEGER NOT NULL DEFAULT 1,
                    evening_hour     INTEGER NOT NULL DEFAULT 18,
                    created_at       TEXT NOT NULL
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return decode_user({
            "id": row["id"],
            "displayName": row["display_name"],
            "pushToken": row["push_token"],
            "morningEnabled": bool(row["morning_enabled"]),
            "morningHour": row["morning_hour"],
            "eveningEnabled": bool(row["evening_enabled"]),
            "eveningHour": row["evening_hour"],
            "createdAt": row["created_at"],
        })

    def add_user(self, user_id: str, display_name: str, push_token: str | None = None) -> User:
        now = utcnow()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (id, display_name, push_token, created_at) VALUES (?, ?, ?, ?)",
                (user_id, display_name, push_token, _iso(now)),
            )
        logger.info("User registered: %s '%s'", user_id, display_name)
        return User(id=user_id, display_name=display_name, push_token=push_token, created_at=now)

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def set_push_token(self, user_id: str, push_token: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET push_token = ? WHERE id = ?", (push_token, user_id))
        logger.info("Push token set for user %s", user_id)

    def clear_push_token(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET push_token = NULL WHERE id = ?", (user_id,))
        logger.info("Push token cleared for user %s", user_id)

    def update_notification_settings(
        self,
        user_id: str,
        morning_enabled: bool,
        morning_hour: int,
        evening_enabled: bool,
        evening_hour: int,
    ) -> None:
        for hour in (morning_hour, evening_hour):
            if not 0 <= hour <= 23:
                raise ValueError(f"Notification hour must be 0..23, got {hour}")
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users SET morning_enabled = ?, morning_hour = ?,
                                 evening_enabled = ?, evening_hour = ?
                WHERE id = ?
                """,
                (int(morning_enabled), morning_hour, int(evening_enabled), evening_hour, user_id),
            )

    def list_users_for_hour(self, hour: int) -> list[User]:
        """Users with a morning or evening notification at this hour."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE (morning_enabled = 1 AND morning_hour = ?)
                   OR (evening_enabled = 1 AND evening_hour = ?)
                ORDER BY created_at
                """,
                (hour, hour),
            ).fetchall()
        return [self._row_to_user(r) for r in rows]
