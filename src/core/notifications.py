"""
Recurring Tasks — Push notifications.

Hourly summary: at each hour of the day, every user who enabled a morning or
evening notification at that hour receives a push with today's and overdue
open task counts.

Group completion: when a member completes a group task, every other member
receives a push naming who completed it.

Delivery failures never propagate: an invalid token or a provider auth
failure clears the stored token; anything else is logged and dropped.
This module is provider-agnostic: it depends on the NotificationPort protocol.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import TYPE_CHECKING

from src.ports.notification_port import PushDeliveryError, PushFailure, PushMessage

if TYPE_CHECKING:
    from src.data.db import GroupDB, TaskDB, UserDB
    from src.data.models import TaskInstance, User
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

SUMMARY_TYPE = "scheduled_notification"
GROUP_COMPLETION_TYPE = "group_task_completion"


# ---------------------------------------------------------------------------
# Delivery with failure classification
# ---------------------------------------------------------------------------


async def deliver(
    notifier: NotificationPort,
    user_db: UserDB,
    user: User,
    message: PushMessage,
) -> bool:
    """Send one push to a user. Returns True when it was delivered."""
    if not user.push_token:
        logger.warning("[%s] No push token, skipping", user.id)
        return False

    try:
        await notifier.send_push(user.push_token, message)
    except PushDeliveryError as exc:
        if exc.failure is PushFailure.INVALID_TOKEN:
            logger.warning("[%s] Invalid push token, clearing it: %s", user.id, exc)
            user_db.clear_push_token(user.id)
        elif exc.failure is PushFailure.PROVIDER_AUTH:
            logger.error(
                "[%s] Push provider rejected our credentials; check the bot token: %s",
                user.id, exc,
            )
            user_db.clear_push_token(user.id)
        else:
            logger.error("[%s] Push delivery failed: %s", user.id, exc)
        return False
    except Exception as exc:
        logger.error("[%s] Push delivery failed: %s", user.id, exc)
        return False

    return True


# ---------------------------------------------------------------------------
# Hourly summary
# ---------------------------------------------------------------------------


def build_summary(today_count: int, overdue_count: int) -> tuple[str, str]:
    """Title and body text for the daily summary push."""
    title = "Task reminder"
    if today_count == 0 and overdue_count == 0:
        body = "No tasks for today"
    elif overdue_count == 0:
        body = f"You have {today_count} task(s) today"
    elif today_count == 0:
        body = f"Overdue: {overdue_count}"
    else:
        body = f"You have {today_count} task(s) today. Overdue: {overdue_count}"
    return title, body


def count_open_tasks(
    task_db: TaskDB,
    group_db: GroupDB,
    user_id: str,
    today: date,
) -> tuple[int, int]:
    """(today, overdue) counts of open tasks the user can see."""
    group_ids = [g.id for g in group_db.list_groups_for_user(user_id)]
    open_tasks = task_db.list_for_owners(
        user_id=user_id, group_ids=group_ids, end=today, open_only=True,
    )
    today_count = sum(1 for t in open_tasks if t.scheduled_date == today)
    overdue_count = sum(1 for t in open_tasks if t.scheduled_date < today)
    return today_count, overdue_count


async def send_summary_to_user(
    user: User,
    hour: int,
    today: date,
    notifier: NotificationPort,
    user_db: UserDB,
    task_db: TaskDB,
    group_db: GroupDB,
) -> bool:
    today_count, overdue_count = count_open_tasks(task_db, group_db, user.id, today)
    title, body = build_summary(today_count, overdue_count)
    message = PushMessage(
        title=title,
        body=body,
        data={
            "type": SUMMARY_TYPE,
            "hour": str(hour),
            "todayCount": str(today_count),
            "overdueCount": str(overdue_count),
        },
        badge=today_count + overdue_count,
    )
    sent = await deliver(notifier, user_db, user, message)
    if sent:
        logger.info("[%s] Summary sent: %s", user.id, body)
    return sent


async def send_notification_for_hour(
    hour: int,
    today: date,
    notifier: NotificationPort,
    user_db: UserDB,
    task_db: TaskDB,
    group_db: GroupDB,
) -> int:
    """Push the summary to every user scheduled for this hour.

    Returns the number of pushes delivered.
    """
    users = user_db.list_users_for_hour(hour)
    logger.info("%02d:00: %d users to notify", hour, len(users))
    if not users:
        return 0

    results = await asyncio.gather(*(
        send_summary_to_user(user, hour, today, notifier, user_db, task_db, group_db)
        for user in users
    ))
    return sum(1 for sent in results if sent)


# ---------------------------------------------------------------------------
# Group completion
# ---------------------------------------------------------------------------


async def notify_group_completion(
    task: TaskInstance,
    notifier: NotificationPort,
    user_db: UserDB,
    group_db: GroupDB,
) -> int:
    """Tell every other current member that ``task`` was completed.

    Returns the number of pushes delivered.
    """
    member_id = task.completed_by_member_id
    if not task.is_group_task or not member_id:
        return 0

    group = group_db.get_group(task.owner_group_id)
    if group is None:
        logger.warning("Group not found: %s", task.owner_group_id)
        return 0

    completer = user_db.get_user(member_id)
    completer_name = completer.display_name if completer else "A member"
    task_title = task.title or "Task"

    message = PushMessage(
        title=f"{group.name} - Task completed",
        body=f"{completer_name} completed \"{task_title}\"",
        data={
            "type": GROUP_COMPLETION_TYPE,
            "groupId": group.id,
            "taskId": task.id,
            "completedByMemberId": member_id,
            "completedByUserName": completer_name,
            "taskTitle": task_title,
        },
    )

    recipients = [
        user for user in (user_db.get_user(uid) for uid in group.member_ids if uid != member_id)
        if user is not None
    ]
    logger.info(
        "Group completion: %s - %s by %s -> %d members",
        group.name, task_title, completer_name, len(recipients),
    )
    results = await asyncio.gather(*(
        deliver(notifier, user_db, user, message) for user in recipients
    ))
    return sum(1 for sent in results if sent)
