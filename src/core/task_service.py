"""
Recurring Tasks — UI-Agnostic Task Service.

Entry points for generation, template lifecycle, completion and the merged
display view. Each UI or scheduling adapter (Telegram commands, job queue)
calls this service with the caller's identity and renders the result.

Error contract: callers see only TaskServiceError subclasses. Auth and
argument checks run before any write; anything unexpected is logged and
surfaced as InternalError. Every generation path is idempotent, so a failed
call can simply be retried.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterator
from zoneinfo import ZoneInfo

from src.core.completion import CompletionAdvancer
from src.core.errors import (
    InternalError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    TaskServiceError,
    Unauthenticated,
)
from src.core.group_replicator import DeleteMode, GroupReplicator
from src.core.materializer import HorizonMaterializer, build_instance, occupied_dates
from src.core.notifications import notify_group_completion
from src.core.projector import DisplayItem, merge_view, project
from src.core.recurrence import MAX_WALK_STEPS
from src.core.task_feed import TaskFeed, poll_source
from src.data.models import (
    DateWindow,
    Group,
    GroupRole,
    IntervalDays,
    MonthlyOnDay,
    NoRepeat,
    RecurrenceRule,
    TaskInstance,
    Template,
    User,
    WeeklyOnWeekdays,
    is_completion_gated,
)
from src.data.schemas import DecodeError, decode_rule

if TYPE_CHECKING:
    from src.data.db import GroupDB, TaskDB, TemplateDB, UserDB
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


@contextmanager
def _internal_errors(action: str) -> Iterator[None]:
    """Pass TaskServiceErrors through; wrap anything else as InternalError."""
    try:
        yield
    except TaskServiceError:
        raise
    except Exception as exc:
        logger.exception("%s failed", action)
        raise InternalError(f"{action} failed") from exc


def validate_rule(rule: RecurrenceRule | dict) -> RecurrenceRule:
    """Decode (if needed) and validate a rule before it is saved."""
    if isinstance(rule, dict):
        try:
            rule = decode_rule(rule)
        except DecodeError as exc:
            raise InvalidArgument(str(exc)) from exc

    if isinstance(rule, WeeklyOnWeekdays):
        if not rule.weekdays:
            raise InvalidArgument("Weekly rule needs at least one weekday")
        if any(not 1 <= d <= 7 for d in rule.weekdays):
            raise InvalidArgument(f"Weekdays must be 1..7, got {sorted(rule.weekdays)}")
    elif isinstance(rule, MonthlyOnDay) and not 1 <= rule.day <= 31:
        raise InvalidArgument(f"Monthly day must be 1..31, got {rule.day}")
    elif isinstance(rule, IntervalDays) and rule.n <= 0:
        raise InvalidArgument(f"Interval must be positive, got {rule.n}")
    return rule


class TaskService:
    """Stateless orchestration over the stores and the generation engine."""

    def __init__(
        self,
        template_db: TemplateDB,
        task_db: TaskDB,
        group_db: GroupDB,
        user_db: UserDB,
        notifier: NotificationPort | None = None,
        tz: ZoneInfo | None = None,
        horizon_days: int | None = None,
        allowed_user_ids: list[str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if tz is None or horizon_days is None or allowed_user_ids is None:
            from src.config import settings
            tz = tz or ZoneInfo(settings.TIMEZONE)
            horizon_days = horizon_days or settings.HORIZON_DAYS
            allowed_user_ids = settings.ALLOWED_USER_IDS if allowed_user_ids is None else allowed_user_ids

        self.template_db = template_db
        self.task_db = task_db
        self.group_db = group_db
        self.user_db = user_db
        self.notifier = notifier
        self.tz = tz
        self.horizon_days = horizon_days
        self.allowed_user_ids = allowed_user_ids
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.materializer = HorizonMaterializer(task_db)
        self.advancer = CompletionAdvancer(template_db, task_db, tz=tz)
        self.replicator = GroupReplicator(template_db, task_db, group_db)

    # -- time ---------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return self.now().astimezone(self.tz).date()

    def horizon(self) -> DateWindow:
        return DateWindow.from_today(self.today(), self.horizon_days)

    # -- auth ---------------------------------------------------------------

    def authenticate(self, caller_id: str | None) -> User:
        if not caller_id:
            raise Unauthenticated("Authentication required")
        if self.allowed_user_ids and caller_id not in self.allowed_user_ids:
            raise Unauthenticated("Caller is not allowed")
        user = self.user_db.get_user(caller_id)
        if user is None:
            raise Unauthenticated("Caller is not registered")
        return user

    def _authorize_template(self, caller_id: str, template: Template, action: str) -> None:
        """Owner for individual templates, owner/admin for group templates."""
        if template.is_group_owned:
            group = self.replicator.require_group(template.owner_group_id)
            self.replicator.require_role(
                group, caller_id, lambda role: role.can_manage_templates, action,
            )
        elif template.owner_user_id != caller_id:
            raise PermissionDenied(f"Only the owner may {action}")

    def _load_template(self, template_id: str | None) -> Template:
        if not template_id:
            raise InvalidArgument("templateId is required")
        template = self.template_db.get_template(template_id)
        if template is None:
            raise NotFound(f"Template {template_id} not found")
        return template

    def _load_task(self, task_id: str | None) -> TaskInstance:
        if not task_id:
            raise InvalidArgument("taskId is required")
        task = self.task_db.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    def _transition_refused(self, task_id: str) -> InvalidArgument:
        # Re-read: the snapshot loaded before the write may predate a concurrent update
        current = self.task_db.get_task(task_id)
        if current is None:
            return InvalidArgument(f"Task {task_id} no longer exists")
        return InvalidArgument(f"Task {task_id} is already {current.state.value}")

    # -- generation entry points -------------------------------------------

    def generate_user_tasks(self, caller_id: str | None) -> dict[str, int]:
        """Materialize every active individual template owned by the caller."""
        user = self.authenticate(caller_id)
        with _internal_errors("generateUserTasks"):
            window = self.horizon()
            created = sum(
                self.materializer.materialize(t, window).count
                for t in self.template_db.list_active(owner_user_id=user.id)
            )
        logger.info("generateUserTasks(%s): %d tasks created", user.id, created)
        return {"tasksCreated": created}

    def generate_tasks_for_template(self, caller_id: str | None, template_id: str | None) -> dict[str, int]:
        """Materialize a single template after an ownership/role check."""
        user = self.authenticate(caller_id)
        template = self._load_template(template_id)
        self._authorize_template(user.id, template, "generate tasks for this template")
        with _internal_errors("generateTasksForTemplate"):
            created = self.materializer.materialize(template, self.horizon()).count
        logger.info("generateTasksForTemplate(%s, %s): %d tasks created", user.id, template.id, created)
        return {"tasksCreated": created}

    def generate_group_tasks(self, caller_id: str | None, group_id: str | None) -> dict[str, int]:
        """Materialize every active template of a group the caller belongs to."""
        user = self.authenticate(caller_id)
        if not group_id:
            raise InvalidArgument("groupId is required")
        group = self.replicator.require_group(group_id)
        self.replicator.require_role(group, user.id, action="generate group tasks")
        with _internal_errors("generateGroupTasks"):
            window = self.horizon()
            created = sum(
                self.materializer.materialize(t, window).count
                for t in self.template_db.list_active(owner_group_id=group.id)
            )
        logger.info("generateGroupTasks(%s, %s): %d tasks created", user.id, group.id, created)
        return {"tasksCreated": created}

    def sweep(self) -> int:
        """Periodic sweep over every active template, individual and group.

        One failing template is logged and skipped so the rest still run.
        """
        window = self.horizon()
        created = 0
        for template in self.template_db.list_active():
            try:
                created += self.materializer.materialize(template, window).count
            except Exception:
                logger.exception("Sweep: template %s failed", template.id)
        logger.info("Sweep %s..%s: %d tasks created", window.start, window.end, created)
        return created

    # -- template lifecycle -------------------------------------------------

    def create_template(
        self,
        caller_id: str | None,
        title: str,
        rule: RecurrenceRule | dict,
        description: str = "",
        group_id: str | None = None,
        start_date: date | None = None,
    ) -> Template:
        """Save a new template and immediately project its first window."""
        user = self.authenticate(caller_id)
        if not title or not title.strip():
            raise InvalidArgument("Title is required")
        rule = validate_rule(rule)

        if group_id is not None:
            group = self.replicator.require_group(group_id)
            self.replicator.require_role(
                group, user.id, lambda role: role.can_manage_templates, "create templates",
            )

        with _internal_errors("createTemplate"):
            template = self.template_db.add_template(
                title.strip(),
                rule,
                start_date or self.today(),
                owner_user_id=None if group_id else user.id,
                owner_group_id=group_id,
                description=description,
                created_at=self.now(),
            )
            self._seed_initial(template, template.start_date)
            self.materializer.materialize(template, self.horizon())
        logger.info("Template created: %s '%s' (%s)", template.id, template.title, rule.kind)
        return template

    def update_template(
        self,
        caller_id: str | None,
        template_id: str | None,
        title: str | None = None,
        description: str | None = None,
        rule: RecurrenceRule | dict | None = None,
    ) -> Template:
        """Apply edits, cascade them to open instances, and regenerate."""
        user = self.authenticate(caller_id)
        previous = self._load_template(template_id)
        self._authorize_template(user.id, previous, "update this template")
        if title is not None and not title.strip():
            raise InvalidArgument("Title is required")

        updated = Template(
            id=previous.id,
            title=title.strip() if title is not None else previous.title,
            rule=validate_rule(rule) if rule is not None else previous.rule,
            owner_user_id=previous.owner_user_id,
            owner_group_id=previous.owner_group_id,
            description=description if description is not None else previous.description,
            start_date=previous.start_date,
            is_active=previous.is_active,
            created_at=previous.created_at,
            updated_at=self.now(),
        )
        with _internal_errors("updateTemplate"):
            today = self.today()
            self.replicator.update_template(previous, updated, today)
            if updated.rule != previous.rule and updated.is_active:
                self._seed_initial(updated, max(today, updated.start_date or today))
                self.materializer.materialize(updated, self.horizon())
        return updated

    def delete_template(
        self,
        caller_id: str | None,
        template_id: str | None,
        mode: DeleteMode = "all",
        cutoff: date | None = None,
    ) -> None:
        """Delete everything, or soft-delete from ``cutoff`` (default today)."""
        user = self.authenticate(caller_id)
        if mode not in ("all", "future"):
            raise InvalidArgument(f"Unknown delete mode: {mode!r}")
        template = self._load_template(template_id)
        self._authorize_template(user.id, template, "delete this template")
        with _internal_errors("deleteTemplate"):
            self.replicator.delete_template(template, mode, cutoff or self.today())
        logger.info("Template %s deleted (%s)", template.id, mode)

    def _seed_initial(self, template: Template, on: date) -> TaskInstance | None:
        """First instance for rules the materializer does not walk.

        A completion-gated chain must always have one open instance, so when
        ``on`` is already taken the seed moves forward in steps of n days.
        """
        gated = is_completion_gated(template.rule)
        if not isinstance(template.rule, NoRepeat) and not gated:
            return None
        open_instances = [
            t for t in self.task_db.list_for_template(template.id, include_deleted=False)
            if not t.is_completed
        ]
        if open_instances:
            return None

        if not gated:
            if on in occupied_dates(self.task_db, template, on, on):
                return None
        else:
            step = timedelta(days=template.rule.n)
            taken = occupied_dates(self.task_db, template, on, on + step * MAX_WALK_STEPS)
            for _ in range(MAX_WALK_STEPS):
                if on not in taken:
                    break
                on += step
            else:
                logger.warning("No free seed date for template %s", template.id)
                return None

        instance = build_instance(template, on)
        self.task_db.add_task(instance)
        return instance

    # -- task state transitions ---------------------------------------------

    async def complete_task(self, caller_id: str | None, task_id: str | None) -> TaskInstance:
        """Scheduled -> Completed, then run the task-update handlers."""
        user = self.authenticate(caller_id)
        task = self._load_task(task_id)
        if not task.is_group_task and task.owner_user_id != user.id:
            raise PermissionDenied("Only the owner may complete this task")
        with _internal_errors("completeTask"):
            if task.is_group_task:
                transition = self.replicator.complete(task, user.id, self.now())
            else:
                transition = self.task_db.mark_completed(task.id, self.now())

        if transition is None:
            raise self._transition_refused(task.id)
        before, after = transition
        await self.handle_task_update(before, after)
        return after

    async def delete_task(self, caller_id: str | None, task_id: str | None) -> TaskInstance:
        """Scheduled -> SoftDeleted. The date stays blocked for regeneration."""
        user = self.authenticate(caller_id)
        task = self._load_task(task_id)
        if task.is_group_task:
            group = self.replicator.require_group(task.owner_group_id)
            self.replicator.require_role(group, user.id, lambda role: role.can_delete_tasks, "delete tasks")
        elif task.owner_user_id != user.id:
            raise PermissionDenied("Only the owner may delete this task")

        with _internal_errors("deleteTask"):
            transition = self.task_db.soft_delete(task.id)
        if transition is None:
            raise self._transition_refused(task.id)
        before, after = transition
        await self.handle_task_update(before, after)
        return after

    async def handle_task_update(self, before: TaskInstance, after: TaskInstance) -> None:
        """Runs after every task update with the before/after snapshots.

        On a fresh completion: advance completion-gated chains and, for group
        tasks, notify the other members. Neither step can fail the update.
        """
        if before.completed_at is not None or after.completed_at is None:
            return

        try:
            self.advancer.advance(after)
        except Exception:
            logger.exception("Advancing after completion of %s failed", after.id)

        if after.is_group_task and after.completed_by_member_id and self.notifier is not None:
            try:
                await notify_group_completion(after, self.notifier, self.user_db, self.group_db)
            except Exception:
                logger.exception("Group completion notification for %s failed", after.id)

    # -- display ------------------------------------------------------------

    def view(self, caller_id: str | None, start: date, end: date) -> list[DisplayItem]:
        """Real tasks plus virtual projections past the horizon, one per day."""
        user = self.authenticate(caller_id)
        if end < start:
            raise InvalidArgument("end must not be before start")
        with _internal_errors("view"):
            groups = self.replicator.groups_for(user.id)
            group_ids = [g.id for g in groups]
            real = self.task_db.list_for_owners(
                user_id=user.id, group_ids=group_ids, start=start, end=end, include_deleted=True,
            )
            templates: list[Template] = self.template_db.list_active(owner_user_id=user.id)
            for group_id in group_ids:
                templates.extend(self.template_db.list_active(owner_group_id=group_id))
            virtual = project(templates, DateWindow(start, end), self.horizon().end, real)
            return merge_view(real, virtual)

    def task_feed(
        self,
        caller_id: str | None,
        start: date,
        end: date,
        interval: float = 30.0,
        max_polls: int | None = None,
    ) -> TaskFeed:
        """Live task list: the caller's own tasks plus one source per group."""
        user = self.authenticate(caller_id)
        if end < start:
            raise InvalidArgument("end must not be before start")

        def personal() -> list[TaskInstance]:
            return self.task_db.list_for_owners(user_id=user.id, start=start, end=end)

        def of_group(group_id: str) -> Callable[[], list[TaskInstance]]:
            # Empty once the caller leaves: membership is checked on every poll
            def fetch() -> list[TaskInstance]:
                return [
                    t for t in self.replicator.visible_tasks(user.id, start, end)
                    if t.owner_group_id == group_id
                ]
            return fetch

        sources = {"personal": poll_source(personal, interval, max_polls)}
        for group in self.replicator.groups_for(user.id):
            sources[f"group:{group.id}"] = poll_source(of_group(group.id), interval, max_polls)
        return TaskFeed(sources)

    # -- groups and settings --------------------------------------------------

    def create_group(self, caller_id: str | None, name: str) -> Group:
        user = self.authenticate(caller_id)
        if not name or not name.strip():
            raise InvalidArgument("Group name is required")
        with _internal_errors("createGroup"):
            return self.group_db.create_group(name.strip(), user.id)

    def join_group(self, caller_id: str | None, group_id: str | None) -> Group:
        """Join as a plain member. Existing members keep their role."""
        user = self.authenticate(caller_id)
        if not group_id:
            raise InvalidArgument("groupId is required")
        group = self.replicator.require_group(group_id)
        if group.role_of(user.id) is not None:
            return group
        with _internal_errors("joinGroup"):
            return self.group_db.add_member(group.id, user.id)

    def leave_group(self, caller_id: str | None, group_id: str | None) -> Group:
        """Leave a group. Its tasks disappear from the caller's lists at once."""
        user = self.authenticate(caller_id)
        if not group_id:
            raise InvalidArgument("groupId is required")
        group = self.replicator.require_group(group_id)
        role = self.replicator.require_role(group, user.id, action="leave this group")
        if role is GroupRole.OWNER:
            raise PermissionDenied("The owner cannot leave the group")
        with _internal_errors("leaveGroup"):
            return self.group_db.remove_member(group.id, user.id)

    def update_notification_settings(
        self,
        caller_id: str | None,
        morning_hour: int | None,
        evening_hour: int | None,
    ) -> User:
        """Set the summary hours. None turns that summary off and keeps its hour."""
        user = self.authenticate(caller_id)
        for hour in (morning_hour, evening_hour):
            if hour is not None and not 0 <= hour <= 23:
                raise InvalidArgument(f"Notification hour must be 0..23, got {hour}")
        with _internal_errors("updateNotificationSettings"):
            self.user_db.update_notification_settings(
                user.id,
                morning_hour is not None,
                user.morning_hour if morning_hour is None else morning_hour,
                evening_hour is not None,
                user.evening_hour if evening_hour is None else evening_hour,
            )
            return self.user_db.get_user(user.id)
