"""
Recurring Tasks — Telegram Bot host.

Hosts the server-side entry points: caller commands for generation
(/generate, /generate_template, /generate_group), the template and task
lifecycle, groups and notification settings, the /tasks view and the live
/watch feed, plus the job queue that drives the periodic generation sweep and
the 24 hourly notification triggers.

Caller identity is the Telegram user id; the push token registered on /start
is the chat id. Users outside ALLOWED_USER_IDS (when set) are silently ignored.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import time as dt_time
from datetime import timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Message, Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes, JobQueue
from telegram.helpers import escape_markdown

from src.config import settings
from src.core.errors import InvalidArgument, TaskServiceError
from src.core.notifications import send_notification_for_hour
from src.data.models import TaskInstance, VirtualInstance

if TYPE_CHECKING:
    from src.core.task_service import TaskService
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

# One daily trigger per hour, registered from this fixed list at startup
NOTIFICATION_HOURS = (
    0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11,
    12, 13, 14, 15, 16, 17, 18, 19, 20, 21, 22, 23,
)

_ERROR_REPLIES = {
    "unauthenticated": "Please send /start first.",
    "permission-denied": "You don't have permission to do that.",
    "not-found": "Not found. Please check the ID.",
    "invalid-argument": "That request isn't valid: {detail}",
    "internal": "Something went wrong. Please try again later.",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from users outside the allow-list."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or (
            settings.ALLOWED_USER_IDS and str(user.id) not in settings.ALLOWED_USER_IDS
        ):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _caller_id(update: Update) -> str | None:
    user = update.effective_user
    return str(user.id) if user else None


def error_reply(exc: TaskServiceError) -> str:
    return _ERROR_REPLIES.get(exc.code, _ERROR_REPLIES["internal"]).format(detail=exc)


def format_item(item: TaskInstance | VirtualInstance) -> str:
    """One Markdown line per task; titles are user text and get escaped."""
    title = escape_markdown(item.title)
    if isinstance(item, VirtualInstance):
        return f"• {item.scheduled_date:%m/%d} {title} (planned)"
    mark = "✅" if item.is_completed else "⬜"
    return f"{mark} {item.scheduled_date:%m/%d} {title}  `{item.id}`"


def parse_rule(spec: str) -> dict:
    """Parse the short rule syntax used by /addtemplate into a rule document.

    once | daily | weekly:1,3 | monthly:15 | monthly:last | every:3 | after:3

    Weekdays are 1=Monday..7=Sunday. ``after:N`` is completion-gated: the next
    task is due N days after the previous one is completed.
    """
    kind, _, param = spec.strip().lower().partition(":")
    try:
        if kind == "once" and not param:
            return {"kind": "none"}
        if kind == "daily" and not param:
            return {"kind": "daily"}
        if kind == "weekly":
            return {"kind": "weekly", "weekdays": [int(d) for d in param.split(",") if d]}
        if kind == "monthly" and param == "last":
            return {"kind": "monthlyLastDay"}
        if kind == "monthly":
            return {"kind": "monthly", "monthlyDay": int(param)}
        if kind in ("every", "after"):
            return {"kind": "interval", "interval": int(param), "completionGated": kind == "after"}
    except ValueError as exc:
        raise InvalidArgument(f"Bad rule '{spec}'") from exc
    raise InvalidArgument(f"Unknown rule '{spec}'")


def _parse_hour(value: str) -> int | None:
    if value.lower() == "off":
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidArgument(f"Bad hour '{value}'") from exc


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — register the caller and their chat as push target."""
    service: TaskService = context.bot_data["service"]
    user = update.effective_user
    chat_id = str(update.effective_chat.id)

    existing = service.user_db.get_user(str(user.id))
    if existing is None:
        service.user_db.add_user(str(user.id), user.first_name or str(user.id), push_token=chat_id)
    elif existing.push_token != chat_id:
        service.user_db.set_push_token(existing.id, chat_id)

    await update.message.reply_text(
        "Welcome! Your recurring tasks are generated automatically.\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/tasks — Tasks for the next 7 days\n"
        "/watch — Live task list (/unwatch to stop)\n"
        "/done <task id> — Mark a task as completed\n"
        "/deletetask <task id> — Delete one task\n\n"
        "*Templates:*\n"
        "/addtemplate <rule> <title> — New recurring task\n"
        "/addgrouptemplate <group id> <rule> <title> — New group task\n"
        "/edittemplate <id> title|rule <value> — Change a template\n"
        "/deletetemplate <id> \\[future] — Delete a template\n"
        "Rules: once, daily, weekly:1,3, monthly:15, monthly:last, every:3, after:3\n\n"
        "*Generation:*\n"
        "/generate — Generate tasks for all your templates\n"
        "/generate\\_template <id> — Generate tasks for one template\n"
        "/generate\\_group <id> — Generate tasks for a group\n\n"
        "*Groups & reminders:*\n"
        "/newgroup <name> — Create a group\n"
        "/join <group id> — Join a group\n"
        "/leave <group id> — Leave a group\n"
        "/notify <morning hour|off> <evening hour|off> — Daily summaries\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /tasks — merged real + planned view for the coming week."""
    service: TaskService = context.bot_data["service"]
    today = service.today()
    try:
        items = service.view(_caller_id(update), today, today + timedelta(days=7))
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return

    if not items:
        await update.message.reply_text("No tasks for the coming week.")
        return
    lines = ["*Upcoming tasks:*\n"] + [format_item(item) for item in items]
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_generate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /generate — generateUserTasks."""
    service: TaskService = context.bot_data["service"]
    try:
        result = service.generate_user_tasks(_caller_id(update))
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"Created {result['tasksCreated']} task(s).")


@authorized_only
async def cmd_generate_template(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /generate_template <id> — generateTasksForTemplate."""
    service: TaskService = context.bot_data["service"]
    template_id = context.args[0] if context.args else None
    try:
        result = service.generate_tasks_for_template(_caller_id(update), template_id)
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"Created {result['tasksCreated']} task(s).")


@authorized_only
async def cmd_generate_group(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /generate_group <id> — generateGroupTasks."""
    service: TaskService = context.bot_data["service"]
    group_id = context.args[0] if context.args else None
    try:
        result = service.generate_group_tasks(_caller_id(update), group_id)
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"Created {result['tasksCreated']} group task(s).")


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <task id> — complete a task (personal or group)."""
    service: TaskService = context.bot_data["service"]
    if not context.args:
        await update.message.reply_text("Usage: /done <task_id>\nUse /tasks to see IDs.")
        return
    try:
        task = await service.complete_task(_caller_id(update), context.args[0])
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"✅ Marked '{task.title}' as done.")


@authorized_only
async def cmd_deletetask(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletetask <task id> — soft-delete one task; it is not regenerated."""
    service: TaskService = context.bot_data["service"]
    if not context.args:
        await update.message.reply_text("Usage: /deletetask <task_id>\nUse /tasks to see IDs.")
        return
    try:
        task = await service.delete_task(_caller_id(update), context.args[0])
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"🗑 Deleted '{task.title}' on {task.scheduled_date:%m/%d}.")


# ---------------------------------------------------------------------------
# Template lifecycle
# ---------------------------------------------------------------------------


async def _add_template(update: Update, context: ContextTypes.DEFAULT_TYPE, group_id: str | None, args: list[str]) -> None:
    service: TaskService = context.bot_data["service"]
    if len(args) < 2:
        usage = "/addgrouptemplate <group id> <rule> <title>" if group_id else "/addtemplate <rule> <title>"
        await update.message.reply_text(
            f"Usage: {usage}\n"
            "Rules: once, daily, weekly:1,3, monthly:15, monthly:last, every:3, after:3"
        )
        return
    try:
        template = service.create_template(
            _caller_id(update), " ".join(args[1:]), parse_rule(args[0]), group_id=group_id,
        )
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(
        f"✅ Template '{escape_markdown(template.title)}' saved  `{template.id}`",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_addtemplate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addtemplate <rule> <title> — personal template."""
    await _add_template(update, context, None, list(context.args or []))


@authorized_only
async def cmd_addgrouptemplate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addgrouptemplate <group id> <rule> <title> — group template."""
    args = list(context.args or [])
    if not args:
        await update.message.reply_text("Usage: /addgrouptemplate <group id> <rule> <title>")
        return
    await _add_template(update, context, args[0], args[1:])


@authorized_only
async def cmd_edittemplate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /edittemplate <id> title <new title> | /edittemplate <id> rule <rule>."""
    service: TaskService = context.bot_data["service"]
    args = list(context.args or [])
    if len(args) < 3 or args[1] not in ("title", "rule"):
        await update.message.reply_text(
            "Usage: /edittemplate <id> title <new title>\n"
            "       /edittemplate <id> rule <rule>"
        )
        return

    template_id, field, value = args[0], args[1], " ".join(args[2:])
    try:
        if field == "title":
            template = service.update_template(_caller_id(update), template_id, title=value)
        else:
            template = service.update_template(_caller_id(update), template_id, rule=parse_rule(value))
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"✏️ Updated '{template.title}'.")


@authorized_only
async def cmd_deletetemplate(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletetemplate <id> [future] — delete everything, or from today on."""
    service: TaskService = context.bot_data["service"]
    args = list(context.args or [])
    if not args:
        await update.message.reply_text(
            "Usage: /deletetemplate <id> [future]\n"
            "Without 'future' the template and all its tasks are removed."
        )
        return

    mode = args[1] if len(args) > 1 else "all"
    try:
        service.delete_template(_caller_id(update), args[0], mode=mode)
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    if mode == "future":
        await update.message.reply_text("🗑 Template stopped; upcoming tasks removed, history kept.")
    else:
        await update.message.reply_text("🗑 Template and all its tasks deleted.")


# ---------------------------------------------------------------------------
# Groups and notification settings
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_newgroup(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newgroup <name> — create a group owned by the caller."""
    service: TaskService = context.bot_data["service"]
    try:
        group = service.create_group(_caller_id(update), " ".join(context.args or []))
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(
        f"👥 Group '{escape_markdown(group.name)}' created  `{group.id}`\n"
        "Share the ID so others can /join.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_join(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /join <group id>."""
    service: TaskService = context.bot_data["service"]
    group_id = context.args[0] if context.args else None
    try:
        group = service.join_group(_caller_id(update), group_id)
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"👥 You're in '{group.name}'.")


@authorized_only
async def cmd_leave(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /leave <group id>."""
    service: TaskService = context.bot_data["service"]
    group_id = context.args[0] if context.args else None
    try:
        group = service.leave_group(_caller_id(update), group_id)
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return
    await update.message.reply_text(f"👋 You left '{group.name}'.")


@authorized_only
async def cmd_notify(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /notify <morning hour|off> <evening hour|off>."""
    service: TaskService = context.bot_data["service"]
    args = list(context.args or [])
    if len(args) != 2:
        await update.message.reply_text(
            "Usage: /notify <morning hour|off> <evening hour|off>\n"
            "Example: /notify 7 18"
        )
        return
    try:
        user = service.update_notification_settings(
            _caller_id(update), _parse_hour(args[0]), _parse_hour(args[1]),
        )
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return

    morning = f"{user.morning_hour:02d}:00" if user.morning_enabled else "off"
    evening = f"{user.evening_hour:02d}:00" if user.evening_enabled else "off"
    await update.message.reply_text(f"🔔 Morning summary: {morning}, evening summary: {evening}")


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------


def _render_feed(snapshot: list[TaskInstance]) -> str:
    if not snapshot:
        return "*Live tasks:*\nNothing scheduled this week."
    return "\n".join(["*Live tasks:*\n"] + [format_item(task) for task in snapshot])


async def _run_watch(stream, message: Message) -> None:
    """Edit ``message`` in place whenever the merged task list changes."""
    last = None
    try:
        async for snapshot in stream:
            text = _render_feed(snapshot)
            if text != last:
                await message.edit_text(text, parse_mode="Markdown")
                last = text
    except Exception as exc:
        logger.error("Task watch stopped: %s", exc)


def _stop_watch(context: ContextTypes.DEFAULT_TYPE) -> bool:
    watch: asyncio.Task | None = context.user_data.pop("watch", None)
    if watch is None or watch.done():
        return False
    watch.cancel()
    return True


@authorized_only
async def cmd_watch(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /watch — keep one message updated with this week's tasks."""
    service: TaskService = context.bot_data["service"]
    today = service.today()
    try:
        feed = service.task_feed(
            _caller_id(update), today, today + timedelta(days=7),
            interval=settings.FEED_POLL_SECONDS,
        )
    except TaskServiceError as exc:
        await update.message.reply_text(error_reply(exc))
        return

    _stop_watch(context)
    message = await update.message.reply_text("Watching your tasks… /unwatch to stop.")
    context.user_data["watch"] = asyncio.create_task(_run_watch(feed.stream(), message))


@authorized_only
async def cmd_unwatch(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /unwatch — stop the live list."""
    if _stop_watch(context):
        await update.message.reply_text("Stopped watching.")
    else:
        await update.message.reply_text("Nothing to stop.")


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


async def _notification_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    hour: int = context.job.data
    service: TaskService = context.bot_data["service"]
    notifier: NotificationPort = context.bot_data["notifier"]
    logger.info("[%02d:00] Notification run started", hour)
    try:
        sent = await send_notification_for_hour(
            hour, service.today(), notifier, service.user_db, service.task_db, service.group_db,
        )
    except Exception as exc:
        logger.error("[%02d:00] Notification run failed: %s", hour, exc)
        return
    logger.info("[%02d:00] Notification run finished: %d sent", hour, sent)


async def _sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    service: TaskService = context.bot_data["service"]
    try:
        service.sweep()
    except Exception as exc:
        logger.error("Generation sweep failed: %s", exc)


def register_jobs(job_queue: JobQueue, tz: ZoneInfo, sweep_minutes: int) -> None:
    """Register the 24 hourly notification triggers and the generation sweep."""
    for hour in NOTIFICATION_HOURS:
        job_queue.run_daily(
            _notification_job,
            time=dt_time(hour=hour, minute=0, tzinfo=tz),
            name=f"notify_hour_{hour:02d}",
            data=hour,
        )

    job_queue.run_repeating(
        _sweep_job,
        interval=timedelta(minutes=sweep_minutes),
        first=timedelta(seconds=10),
        name="generation_sweep",
    )
    logger.info(
        "Scheduled %d hourly notifications (%s) and a sweep every %d min",
        len(NOTIFICATION_HOURS), tz.key, sweep_minutes,
    )


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def build_app(
    service: TaskService | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        service: Task service. Defaults to one backed by DATABASE_PATH.
        notifier: Push port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    if service is None:
        from src.core.task_service import TaskService
        from src.data.db import GroupDB, TaskDB, TemplateDB, UserDB
        service = TaskService(TemplateDB(), TaskDB(), GroupDB(), UserDB(), notifier=notifier)

    app.bot_data["service"] = service
    app.bot_data["notifier"] = notifier

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("tasks", cmd_tasks))
    app.add_handler(CommandHandler("generate", cmd_generate))
    app.add_handler(CommandHandler("generate_template", cmd_generate_template))
    app.add_handler(CommandHandler("generate_group", cmd_generate_group))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("deletetask", cmd_deletetask))
    app.add_handler(CommandHandler("addtemplate", cmd_addtemplate))
    app.add_handler(CommandHandler("addgrouptemplate", cmd_addgrouptemplate))
    app.add_handler(CommandHandler("edittemplate", cmd_edittemplate))
    app.add_handler(CommandHandler("deletetemplate", cmd_deletetemplate))
    app.add_handler(CommandHandler("newgroup", cmd_newgroup))
    app.add_handler(CommandHandler("join", cmd_join))
    app.add_handler(CommandHandler("leave", cmd_leave))
    app.add_handler(CommandHandler("notify", cmd_notify))
    app.add_handler(CommandHandler("watch", cmd_watch))
    app.add_handler(CommandHandler("unwatch", cmd_unwatch))

    register_jobs(app.job_queue, ZoneInfo(settings.TIMEZONE), settings.GENERATION_SWEEP_MINUTES)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting recurring task service...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
