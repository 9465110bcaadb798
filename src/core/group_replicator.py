"""Group replicator — shared templates and tasks for every group member.

Storage shape: one shared document per logical template/task, keyed by the
owning group id. Every current member reads the same rows, so completing a
task as any member marks it completed for all of them and records who did it.
Membership is resolved at read time: instances follow current membership and
nothing is redistributed when members join or leave.

Template writes and their cascades onto existing instances are committed in
chunks no larger than the store's single-transaction limit. Chunks commit
independently; a failure part-way raises PartialFanOutError and the caller
retries the whole operation. Cascade ops are ordered before the template op,
so a retry still sees the pre-change template and rebuilds the same plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Callable, Literal

from src.core.errors import NotFound, PartialFanOutError, PermissionDenied
from src.data.db import utcnow
from src.data.models import Group, GroupRole, TaskInstance, Template

if TYPE_CHECKING:
    from src.data.db import GroupDB, TaskDB, TemplateDB, WriteOp

logger = logging.getLogger(__name__)

DeleteMode = Literal["all", "future"]


@dataclass
class FanOutResult:
    operations: int
    chunks: int


def chunked(ops: list[WriteOp], size: int) -> list[list[WriteOp]]:
    return [ops[i:i + size] for i in range(0, len(ops), size)]


class GroupReplicator:
    """Wraps template/instance mutations with group checks and chunked commits."""

    def __init__(
        self,
        template_db: TemplateDB,
        task_db: TaskDB,
        group_db: GroupDB,
        chunk_size: int | None = None,
    ) -> None:
        self._template_db = template_db
        self._task_db = task_db
        self._group_db = group_db
        self._chunk_size = chunk_size or task_db.max_batch_operations

    # -- membership ---------------------------------------------------------

    def require_group(self, group_id: str) -> Group:
        group = self._group_db.get_group(group_id)
        if group is None or not group.is_active:
            raise NotFound(f"Group {group_id} not found")
        return group

    def require_role(
        self,
        group: Group,
        user_id: str,
        allowed: Callable[[GroupRole], bool] = lambda role: True,
        action: str = "access this group",
    ) -> GroupRole:
        role = group.role_of(user_id)
        if role is None:
            raise PermissionDenied(f"Not a member of group {group.id}")
        if not allowed(role):
            raise PermissionDenied(f"Role '{role.value}' may not {action}")
        return role

    def groups_for(self, user_id: str) -> list[Group]:
        return self._group_db.list_groups_for_user(user_id)

    def visible_tasks(
        self,
        user_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[TaskInstance]:
        """Every group task the user can currently see, via current membership."""
        group_ids = [g.id for g in self.groups_for(user_id)]
        if not group_ids:
            return []
        return self._task_db.list_for_owners(group_ids=group_ids, start=start, end=end)

    # -- chunked commits ----------------------------------------------------

    def commit_chunked(self, ops: list[WriteOp], context: str = "fan-out") -> FanOutResult:
        chunks = chunked(ops, self._chunk_size)
        for index, chunk in enumerate(chunks):
            try:
                self._task_db.commit(chunk)
            except Exception as exc:
                logger.error(
                    "%s: chunk %d/%d failed after %d committed: %s",
                    context, index + 1, len(chunks), index, exc,
                )
                raise PartialFanOutError(
                    f"{context} failed at chunk {index + 1} of {len(chunks)}",
                    committed_chunks=index,
                    total_chunks=len(chunks),
                ) from exc
        if ops:
            logger.info("%s: committed %d operations in %d chunks", context, len(ops), len(chunks))
        return FanOutResult(operations=len(ops), chunks=len(chunks))

    # -- template writes ----------------------------------------------------

    def _check_owner(self, template: Template) -> None:
        if template.is_group_owned:
            self.require_group(template.owner_group_id)

    def update_template(self, previous: Template, updated: Template, today: date) -> FanOutResult:
        """Save ``updated`` and cascade onto open instances from ``today`` on.

        Title/description changes are copied to open instances. A rule change
        purges open, non-deleted future instances so they can be regenerated
        under the new rule; soft-deleted dates and completed history stay put.
        """
        self._check_owner(updated)
        open_future = [
            t for t in self._task_db.list_for_template(previous.id, start=today, include_deleted=False)
            if not t.is_completed
        ]

        ops: list[WriteOp] = []
        if updated.rule != previous.rule:
            ops.extend(self._task_db.op_delete(t.id) for t in open_future)
        elif (updated.title, updated.description) != (previous.title, previous.description):
            ops.extend(
                self._task_db.op_update_text(t.id, updated.title, updated.description)
                for t in open_future
            )
        ops.append(self._template_db.op_save(updated))
        return self.commit_chunked(ops, context=f"update template {updated.id}")

    def delete_template(self, template: Template, mode: DeleteMode, cutoff: date) -> FanOutResult:
        """Delete a template and its instances.

        ``all`` purges the template and every instance. ``future`` deactivates
        the template and soft-deletes open instances on or after ``cutoff``,
        keeping completions for history.
        """
        instances = self._task_db.list_for_template(template.id, include_deleted=True)
        ops: list[WriteOp] = []
        if mode == "all":
            ops.extend(self._task_db.op_delete(t.id) for t in instances)
            ops.append(self._template_db.op_delete(template.id))
        else:
            ops.extend(
                self._task_db.op_soft_delete(t.id)
                for t in instances
                if t.scheduled_date >= cutoff and not t.is_completed and not t.is_deleted
            )
            template.is_active = False
            template.updated_at = utcnow()
            ops.append(self._template_db.op_save(template))
        return self.commit_chunked(ops, context=f"delete template {template.id} ({mode})")

    # -- completion ---------------------------------------------------------

    def complete(
        self,
        task: TaskInstance,
        member_id: str,
        completed_at: datetime,
    ) -> tuple[TaskInstance, TaskInstance] | None:
        """Complete a group task on behalf of one member, for all members."""
        group = self.require_group(task.owner_group_id)
        self.require_role(group, member_id, lambda role: role.can_complete_tasks, "complete tasks")
        return self._task_db.mark_completed(task.id, completed_at, completed_by_member_id=member_id)
