"""Tests for src.core.task_service — entry points, auth and error taxonomy."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import pytest

from src.core.errors import (
    InternalError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    Unauthenticated,
)
from src.core.task_service import TaskService, validate_rule
from src.data.models import (
    Daily,
    GroupRole,
    IntervalDays,
    MonthlyOnDay,
    NoRepeat,
    TaskInstance,
    VirtualInstance,
    WeeklyOnWeekdays,
)

TODAY = date(2024, 1, 1)


@pytest.fixture
def home(group_db, alice, bob):
    group = group_db.create_group("Home", "alice")
    group_db.add_member(group.id, "bob")
    return group


# ---------------------------------------------------------------------------
# validate_rule
# ---------------------------------------------------------------------------


class TestValidateRule:
    def test_decodes_mapping(self):
        assert validate_rule({"kind": "weekly", "weekdays": [1]}) == WeeklyOnWeekdays(frozenset({1}))

    def test_bad_mapping_is_invalid_argument(self):
        with pytest.raises(InvalidArgument):
            validate_rule({"kind": "weekly"})

    def test_empty_weekdays_rejected(self):
        with pytest.raises(InvalidArgument, match="weekday"):
            validate_rule(WeeklyOnWeekdays(frozenset()))

    def test_weekday_out_of_range_rejected(self):
        with pytest.raises(InvalidArgument):
            validate_rule(WeeklyOnWeekdays(frozenset({0})))

    def test_monthly_day_out_of_range_rejected(self):
        with pytest.raises(InvalidArgument):
            validate_rule(MonthlyOnDay(32))

    def test_non_positive_interval_rejected(self):
        with pytest.raises(InvalidArgument):
            validate_rule(IntervalDays(0))


# ---------------------------------------------------------------------------
# authentication
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_missing_caller(self, service):
        with pytest.raises(Unauthenticated):
            service.generate_user_tasks(None)

    def test_unregistered_caller(self, service):
        with pytest.raises(Unauthenticated):
            service.generate_user_tasks("stranger")

    def test_allow_list(self, service, alice):
        service.allowed_user_ids = ["bob"]
        with pytest.raises(Unauthenticated):
            service.generate_user_tasks("alice")

    def test_error_codes(self):
        assert Unauthenticated.code == "unauthenticated"
        assert PermissionDenied.code == "permission-denied"
        assert NotFound.code == "not-found"
        assert InvalidArgument.code == "invalid-argument"
        assert InternalError.code == "internal"


# ---------------------------------------------------------------------------
# generation entry points
# ---------------------------------------------------------------------------


class TestGenerateUserTasks:
    def test_creates_then_is_idempotent(self, service, template_db, alice):
        template_db.add_template("Gym", WeeklyOnWeekdays(frozenset({2, 4})), owner_user_id="alice", start_date=TODAY)
        template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)

        assert service.generate_user_tasks("alice") == {"tasksCreated": 4 + 15}
        assert service.generate_user_tasks("alice") == {"tasksCreated": 0}

    def test_only_callers_individual_templates(self, service, template_db, alice, bob, home):
        template_db.add_template("Bob's", Daily(), owner_user_id="bob", start_date=TODAY)
        template_db.add_template("Shared", Daily(), owner_group_id=home.id, start_date=TODAY)
        assert service.generate_user_tasks("alice") == {"tasksCreated": 0}

    def test_store_failure_is_internal(self, service, template_db, alice):
        template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)
        with patch.object(service.materializer, "materialize", side_effect=RuntimeError("disk full")):
            with pytest.raises(InternalError) as exc_info:
                service.generate_user_tasks("alice")
        assert "disk full" not in str(exc_info.value)


class TestGenerateTasksForTemplate:
    def test_owner_can_generate(self, service, template_db, alice):
        template = template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)
        assert service.generate_tasks_for_template("alice", template.id) == {"tasksCreated": 15}

    def test_missing_id(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.generate_tasks_for_template("alice", None)

    def test_unknown_id(self, service, alice):
        with pytest.raises(NotFound):
            service.generate_tasks_for_template("alice", "nope")

    def test_other_users_template_denied(self, service, template_db, alice, bob):
        template = template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)
        with pytest.raises(PermissionDenied):
            service.generate_tasks_for_template("bob", template.id)
        assert service.task_db.list_for_template(template.id) == []

    def test_group_member_role_insufficient(self, service, template_db, home):
        template = template_db.add_template("Trash", Daily(), owner_group_id=home.id, start_date=TODAY)
        with pytest.raises(PermissionDenied):
            service.generate_tasks_for_template("bob", template.id)

    def test_group_admin_allowed(self, service, template_db, group_db, home):
        group_db.set_member_role(home.id, "bob", GroupRole.ADMIN)
        template = template_db.add_template("Trash", Daily(), owner_group_id=home.id, start_date=TODAY)
        assert service.generate_tasks_for_template("bob", template.id) == {"tasksCreated": 15}


class TestGenerateGroupTasks:
    def test_member_can_generate(self, service, template_db, home):
        template_db.add_template("Trash", WeeklyOnWeekdays(frozenset({1})), owner_group_id=home.id, start_date=TODAY)
        assert service.generate_group_tasks("bob", home.id) == {"tasksCreated": 3}

    def test_non_member_denied(self, service, user_db, home):
        user_db.add_user("mallory", "Mallory")
        with pytest.raises(PermissionDenied):
            service.generate_group_tasks("mallory", home.id)

    def test_missing_group_id(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.generate_group_tasks("alice", "")

    def test_unknown_group(self, service, alice):
        with pytest.raises(NotFound):
            service.generate_group_tasks("alice", "nope")


class TestSweep:
    def test_covers_individual_and_group(self, service, template_db, home):
        template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)
        template_db.add_template("Trash", WeeklyOnWeekdays(frozenset({1})), owner_group_id=home.id, start_date=TODAY)
        assert service.sweep() == 15 + 3
        assert service.sweep() == 0

    def test_one_failing_template_does_not_stop_the_rest(self, service, template_db, alice):
        template_db.add_template("A", Daily(), owner_user_id="alice", start_date=TODAY)
        template_db.add_template("B", Daily(), owner_user_id="alice", start_date=TODAY)
        real = service.materializer.materialize
        calls = []

        def flaky(template, window):
            calls.append(template.title)
            if template.title == "A":
                raise RuntimeError("boom")
            return real(template, window)

        with patch.object(service.materializer, "materialize", side_effect=flaky):
            assert service.sweep() == 15
        assert calls == ["A", "B"]

    def test_window_follows_clock(self, service, template_db, clock, alice):
        template_db.add_template("Journal", Daily(), owner_user_id="alice", start_date=TODAY)
        service.sweep()
        clock.now = clock.now + timedelta(days=1)
        assert service.sweep() == 1


# ---------------------------------------------------------------------------
# template lifecycle
# ---------------------------------------------------------------------------


class TestCreateTemplate:
    def test_projects_first_window(self, service, alice):
        template = service.create_template("alice", "Journal", {"kind": "daily"})
        assert template.start_date == TODAY
        assert len(service.task_db.list_for_template(template.id)) == 15

    def test_no_repeat_seeds_single_instance(self, service, alice):
        template = service.create_template("alice", "Dentist", NoRepeat(), start_date=date(2024, 1, 5))
        tasks = service.task_db.list_for_template(template.id)
        assert [t.scheduled_date for t in tasks] == [date(2024, 1, 5)]

    def test_gated_interval_seeds_first_instance(self, service, alice):
        template = service.create_template("alice", "Water plants", IntervalDays(3, completion_gated=True))
        tasks = service.task_db.list_for_template(template.id)
        assert [t.scheduled_date for t in tasks] == [TODAY]

    def test_blank_title_rejected(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.create_template("alice", "  ", Daily())

    def test_empty_weekdays_rejected_at_save(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.create_template("alice", "Gym", {"kind": "weekly", "weekdays": []})
        assert service.template_db.list_active() == []

    def test_group_template_needs_manager_role(self, service, home):
        with pytest.raises(PermissionDenied):
            service.create_template("bob", "Trash", Daily(), group_id=home.id)
        template = service.create_template("alice", "Trash", Daily(), group_id=home.id)
        assert template.owner_group_id == home.id
        assert template.owner_user_id is None

    def test_start_date_is_the_service_local_day(self, template_db, task_db, group_db, user_db, clock, alice):
        clock.now = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)
        tokyo = TaskService(
            template_db, task_db, group_db, user_db,
            tz=ZoneInfo("Asia/Tokyo"), horizon_days=14, allowed_user_ids=[], clock=clock,
        )
        template = tokyo.create_template("alice", "Stretch", IntervalDays(2))

        assert template.start_date == date(2024, 1, 2)
        assert template_db.get_template(template.id).start_date == date(2024, 1, 2)
        first = task_db.list_for_template(template.id)[0]
        assert first.scheduled_date == date(2024, 1, 2)


class TestUpdateTemplate:
    def test_rule_change_regenerates(self, service, alice):
        template = service.create_template("alice", "Gym", Daily())
        service.update_template("alice", template.id, rule=WeeklyOnWeekdays(frozenset({1})))
        dates = [t.scheduled_date for t in service.task_db.list_for_template(template.id)]
        assert dates == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)]

    def test_retitle(self, service, alice):
        template = service.create_template("alice", "Gym", Daily())
        updated = service.update_template("alice", template.id, title="Workout")
        assert updated.title == "Workout"
        assert {t.title for t in service.task_db.list_for_template(template.id)} == {"Workout"}

    def test_other_user_denied(self, service, alice, bob):
        template = service.create_template("alice", "Gym", Daily())
        with pytest.raises(PermissionDenied):
            service.update_template("bob", template.id, title="Mine now")

    @pytest.mark.asyncio
    async def test_switch_to_gated_after_todays_completion_keeps_one_open_task(self, service, clock, alice):
        template = service.create_template("alice", "Water plants", Daily())
        todays = service.task_db.list_for_template(template.id)[0]
        await service.complete_task("alice", todays.id)

        service.update_template("alice", template.id, rule=IntervalDays(3, completion_gated=True))

        open_tasks = [t for t in service.task_db.list_for_template(template.id) if not t.is_completed]
        assert [t.scheduled_date for t in open_tasks] == [date(2024, 1, 4)]

        clock.now = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)
        await service.complete_task("alice", open_tasks[0].id)
        dates = [t.scheduled_date for t in service.task_db.list_for_template(template.id)]
        assert dates == [date(2024, 1, 1), date(2024, 1, 4), date(2024, 1, 8)]

    def test_gated_seed_skips_soft_deleted_dates(self, service, alice):
        template = service.create_template("alice", "Water plants", Daily())
        tasks = service.task_db.list_for_template(template.id)
        service.task_db.mark_completed(tasks[0].id, datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc))
        service.task_db.soft_delete(tasks[2].id)

        service.update_template("alice", template.id, rule=IntervalDays(2, completion_gated=True))

        open_tasks = [
            t for t in service.task_db.list_for_template(template.id)
            if not t.is_completed and not t.is_deleted
        ]
        assert [t.scheduled_date for t in open_tasks] == [date(2024, 1, 5)]


class TestDeleteTemplate:
    def test_delete_all(self, service, alice):
        template = service.create_template("alice", "Gym", Daily())
        service.delete_template("alice", template.id, mode="all")
        assert service.template_db.get_template(template.id) is None
        assert service.task_db.list_for_template(template.id) == []

    def test_delete_future_from_today(self, service, alice):
        template = service.create_template("alice", "Gym", Daily())
        service.delete_template("alice", template.id, mode="future")
        assert all(t.is_deleted for t in service.task_db.list_for_template(template.id))
        assert service.generate_user_tasks("alice") == {"tasksCreated": 0}

    def test_unknown_mode(self, service, alice):
        template = service.create_template("alice", "Gym", Daily())
        with pytest.raises(InvalidArgument):
            service.delete_template("alice", template.id, mode="some")


# ---------------------------------------------------------------------------
# task transitions
# ---------------------------------------------------------------------------


class TestCompleteTask:
    @pytest.mark.asyncio
    async def test_gated_completion_schedules_successor(self, service, clock, alice):
        template = service.create_template(
            "alice", "Water plants", IntervalDays(3, completion_gated=True), start_date=date(2024, 1, 10),
        )
        (first,) = service.task_db.list_for_template(template.id)
        clock.now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

        done = await service.complete_task("alice", first.id)

        assert done.is_completed
        dates = [t.scheduled_date for t in service.task_db.list_for_template(template.id)]
        assert dates == [date(2024, 1, 10), date(2024, 1, 18)]

    @pytest.mark.asyncio
    async def test_completing_twice_is_invalid(self, service, alice):
        template = service.create_template("alice", "Journal", Daily())
        task = service.task_db.list_for_template(template.id)[0]
        await service.complete_task("alice", task.id)
        with pytest.raises(InvalidArgument, match="completed"):
            await service.complete_task("alice", task.id)

    @pytest.mark.asyncio
    async def test_other_users_task_denied(self, service, alice, bob):
        template = service.create_template("alice", "Journal", Daily())
        task = service.task_db.list_for_template(template.id)[0]
        with pytest.raises(PermissionDenied):
            await service.complete_task("bob", task.id)

    @pytest.mark.asyncio
    async def test_unknown_task(self, service, alice):
        with pytest.raises(NotFound):
            await service.complete_task("alice", "nope")

    @pytest.mark.asyncio
    async def test_group_completion_notifies_other_members(self, service, home):
        service.notifier = MagicMock()
        service.notifier.send_push = AsyncMock()
        template = service.create_template("alice", "Trash", Daily(), group_id=home.id)
        task = service.task_db.list_for_template(template.id)[0]

        done = await service.complete_task("bob", task.id)

        assert done.completed_by_member_id == "bob"
        service.notifier.send_push.assert_awaited_once()
        token, message = service.notifier.send_push.await_args.args
        assert token == "chat-alice"
        assert message.data["completedByMemberId"] == "bob"

    @pytest.mark.asyncio
    async def test_advance_failure_does_not_fail_completion(self, service, alice):
        template = service.create_template("alice", "Water", IntervalDays(2, completion_gated=True))
        task = service.task_db.list_for_template(template.id)[0]
        with patch.object(service.advancer, "advance", side_effect=RuntimeError("boom")):
            done = await service.complete_task("alice", task.id)
        assert done.is_completed


class TestDeleteTask:
    @pytest.mark.asyncio
    async def test_soft_delete_blocks_regeneration(self, service, alice):
        template = service.create_template("alice", "Journal", Daily())
        task = service.task_db.list_for_template(template.id)[3]
        deleted = await service.delete_task("alice", task.id)
        assert deleted.is_deleted
        assert service.generate_user_tasks("alice") == {"tasksCreated": 0}

    @pytest.mark.asyncio
    async def test_group_member_cannot_delete(self, service, home):
        template = service.create_template("alice", "Trash", Daily(), group_id=home.id)
        task = service.task_db.list_for_template(template.id)[0]
        with pytest.raises(PermissionDenied):
            await service.delete_task("bob", task.id)
        await service.delete_task("alice", task.id)

    @pytest.mark.asyncio
    async def test_deleting_completed_is_invalid(self, service, alice):
        template = service.create_template("alice", "Journal", Daily())
        task = service.task_db.list_for_template(template.id)[0]
        await service.complete_task("alice", task.id)
        with pytest.raises(InvalidArgument):
            await service.delete_task("alice", task.id)

    @pytest.mark.asyncio
    async def test_refusal_names_the_stored_state(self, service, alice):
        template = service.create_template("alice", "Journal", Daily())
        loaded = service.task_db.list_for_template(template.id)[0]
        # completed elsewhere between the load and the write
        service.task_db.mark_completed(loaded.id, datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc))

        with patch.object(service, "_load_task", return_value=loaded):
            with pytest.raises(InvalidArgument, match="already completed"):
                await service.delete_task("alice", loaded.id)


class TestHandleTaskUpdate:
    @pytest.mark.asyncio
    async def test_ignores_non_completion_updates(self, service):
        service.advancer = MagicMock()
        before = TaskInstance(id="x", title="A", scheduled_date=TODAY, owner_user_id="alice")
        after = TaskInstance(id="x", title="B", scheduled_date=TODAY, owner_user_id="alice")
        await service.handle_task_update(before, after)
        service.advancer.advance.assert_not_called()

    @pytest.mark.asyncio
    async def test_ignores_already_completed(self, service):
        service.advancer = MagicMock()
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        before = TaskInstance(id="x", title="A", scheduled_date=TODAY, owner_user_id="alice", completed_at=when)
        after = TaskInstance(id="x", title="B", scheduled_date=TODAY, owner_user_id="alice", completed_at=when)
        await service.handle_task_update(before, after)
        service.advancer.advance.assert_not_called()


# ---------------------------------------------------------------------------
# merged view
# ---------------------------------------------------------------------------


class TestView:
    def test_real_then_virtual_one_per_day(self, service, alice):
        service.create_template("alice", "Journal", Daily())
        items = service.view("alice", TODAY, TODAY + timedelta(days=29))

        assert [i.scheduled_date for i in items] == [TODAY + timedelta(days=n) for n in range(30)]
        assert all(isinstance(i, TaskInstance) for i in items[:15])
        assert all(isinstance(i, VirtualInstance) for i in items[15:])

    def test_includes_group_tasks(self, service, home):
        service.create_template("alice", "Trash", WeeklyOnWeekdays(frozenset({1})), group_id=home.id)
        items = service.view("bob", TODAY, TODAY + timedelta(days=27))
        assert [i.scheduled_date for i in items] == [date(2024, 1, d) for d in (1, 8, 15, 22)]

    def test_end_before_start(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.view("alice", TODAY, TODAY - timedelta(days=1))


# ---------------------------------------------------------------------------
# live task feed
# ---------------------------------------------------------------------------


class TestTaskFeed:
    @pytest.mark.asyncio
    async def test_one_source_per_group_merged_with_personal(self, service, home):
        service.create_template("bob", "Journal", Daily())
        service.create_template("alice", "Trash", WeeklyOnWeekdays(frozenset({1})), group_id=home.id)

        feed = service.task_feed("bob", TODAY, TODAY + timedelta(days=7), interval=0, max_polls=1)

        assert feed.keys == sorted([f"group:{home.id}", "personal"])
        snapshots = [s async for s in feed.stream()]
        titles = [t.title for t in snapshots[-1]]
        assert titles.count("Journal") == 8
        assert titles.count("Trash") == 2

    @pytest.mark.asyncio
    async def test_group_source_empties_after_leaving(self, service, home):
        service.create_template("alice", "Trash", Daily(), group_id=home.id)
        feed = service.task_feed("bob", TODAY, TODAY, interval=0.05, max_polls=2)

        seen = []
        async for snapshot in feed.stream():
            seen.append([t.title for t in snapshot])
            if seen[-1] == ["Trash"]:
                service.leave_group("bob", home.id)

        assert ["Trash"] in seen
        assert seen[-1] == []

    def test_unregistered_caller(self, service):
        with pytest.raises(Unauthenticated):
            service.task_feed("stranger", TODAY, TODAY)


# ---------------------------------------------------------------------------
# groups and notification settings
# ---------------------------------------------------------------------------


class TestGroups:
    def test_creator_owns_group(self, service, alice):
        group = service.create_group("alice", "  Home ")
        assert group.name == "Home"
        assert group.role_of("alice") is GroupRole.OWNER

    def test_blank_name_rejected(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.create_group("alice", " ")

    def test_join_as_member_and_see_group_tasks(self, service, home, user_db):
        user_db.add_user("carol", "Carol")
        service.create_template("alice", "Trash", WeeklyOnWeekdays(frozenset({1})), group_id=home.id)

        group = service.join_group("carol", home.id)

        assert group.role_of("carol") is GroupRole.MEMBER
        items = service.view("carol", TODAY, TODAY + timedelta(days=6))
        assert [i.title for i in items] == ["Trash"]

    def test_join_keeps_existing_role(self, service, home):
        assert service.join_group("alice", home.id).role_of("alice") is GroupRole.OWNER

    def test_join_unknown_group(self, service, alice):
        with pytest.raises(NotFound):
            service.join_group("alice", "nope")

    def test_leave(self, service, home):
        group = service.leave_group("bob", home.id)
        assert group.role_of("bob") is None
        with pytest.raises(PermissionDenied):
            service.generate_group_tasks("bob", home.id)

    def test_owner_cannot_leave(self, service, home):
        with pytest.raises(PermissionDenied):
            service.leave_group("alice", home.id)

    def test_non_member_cannot_leave(self, service, home, user_db):
        user_db.add_user("carol", "Carol")
        with pytest.raises(PermissionDenied):
            service.leave_group("carol", home.id)


class TestNotificationSettings:
    def test_set_both_hours(self, service, alice):
        user = service.update_notification_settings("alice", 6, 21)
        assert (user.morning_enabled, user.morning_hour) == (True, 6)
        assert (user.evening_enabled, user.evening_hour) == (True, 21)
        assert [u.id for u in service.user_db.list_users_for_hour(21)] == ["alice"]

    def test_off_keeps_previous_hour(self, service, alice):
        user = service.update_notification_settings("alice", None, 20)
        assert user.morning_enabled is False
        assert user.morning_hour == 7
        assert service.user_db.list_users_for_hour(7) == []

    def test_out_of_range(self, service, alice):
        with pytest.raises(InvalidArgument):
            service.update_notification_settings("alice", 24, 18)
