"""Tests for delivery routing, completion, snooze and the badge."""

import asyncio
from datetime import date

import pytest

from reminders.models import ActionKind, NotificationPayload, Reminder, RepeatFrequency, RepeatRule
from reminders.router import OccurrenceState

from conftest import local

DAILY = RepeatRule.every(RepeatFrequency.DAILY)


class TestDelivery:

    @pytest.mark.asyncio
    async def test_foreground_delivery_shows_banner(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))

        await dispatcher.fire(reminder.id, foreground=True)

        assert [b.reminder_id for b in app.banners.visible] == [reminder.id]
        assert app.router.badge_count == 0
        assert app.router.occurrence_state(reminder.id) == OccurrenceState.DELIVERED

    @pytest.mark.asyncio
    async def test_background_delivery_bumps_badge(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))

        await dispatcher.fire(reminder.id, foreground=False)

        assert app.banners.visible == []
        assert app.router.badge_count == 1
        assert dispatcher.badge_count == 1

    @pytest.mark.asyncio
    async def test_test_payload_bypasses_routing(self, app, dispatcher, clock):
        test_id = await app.send_test_notification()
        assert test_id not in await dispatcher.list_pending()

        await dispatcher.fire(test_id, foreground=True)

        assert app.banners.visible == []
        assert app.router.badge_count == 0

    @pytest.mark.asyncio
    async def test_delivery_for_deleted_reminder_is_ignored(self, app, dispatcher):
        await dispatcher.deliver(NotificationPayload(reminder_id="gone"), True)

        assert app.banners.visible == []

    @pytest.mark.asyncio
    async def test_daily_series_advances_after_delivery(self, app, dispatcher, store, clock):
        reminder = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))

        await dispatcher.fire(reminder.id, foreground=True)

        assert store.require(reminder.id).fire_at == local(2024, 1, 2, 9, 0)
        assert list(dispatcher.pending) == [reminder.id]
        assert dispatcher.pending[reminder.id][0] == local(2024, 1, 2, 9, 0)
        assert app.coordinator.pending_entries()[reminder.id].scheduled_at == local(2024, 1, 2, 9, 0)
        assert app.router.occurrence_state(reminder.id) == OccurrenceState.RESCHEDULED

    @pytest.mark.asyncio
    async def test_redelivery_does_not_show_banner_twice(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(reminder.id, foreground=True)
        app.banners.dismiss(reminder.id)

        clock.advance(seconds=30)
        await dispatcher.deliver(NotificationPayload(reminder_id=reminder.id), True)

        assert app.banners.visible == []
        # The next occurrence stays registered
        assert dispatcher.pending[reminder.id][0] == local(2024, 1, 2, 9, 0)
        assert reminder.id in app.coordinator.pending_entries()

    @pytest.mark.asyncio
    async def test_next_day_occurrence_is_shown(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(reminder.id, foreground=True)
        app.banners.dismiss(reminder.id)

        clock.set(local(2024, 1, 2, 9, 0))
        await dispatcher.fire(reminder.id, foreground=True)

        assert [b.fire_at for b in app.banners.visible] == [local(2024, 1, 2, 9, 0)]

    @pytest.mark.asyncio
    async def test_exhausted_custom_series_completes(self, app, dispatcher, store, clock):
        rule = RepeatRule.custom({date(2024, 1, 1)})
        reminder = store.insert(Reminder(title="Bins", fire_at=local(2024, 1, 1, 0, 0), repeat_rule=rule))
        clock.set(local(2024, 1, 1, 0, 0))
        await dispatcher.deliver(NotificationPayload(reminder_id=reminder.id), False)

        assert store.require(reminder.id).is_completed is True
        assert dispatcher.pending == {}

    @pytest.mark.asyncio
    async def test_delivery_from_another_thread(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))
        payload = NotificationPayload(reminder_id=reminder.id)

        loop = asyncio.get_running_loop()
        future = await loop.run_in_executor(None, dispatcher.deliver_threadsafe, payload, True)
        await asyncio.wrap_future(future)

        assert [b.reminder_id for b in app.banners.visible] == [reminder.id]


    @pytest.mark.asyncio
    async def test_series_deleted_while_advancing_is_ignored(self, app, dispatcher, store, clock, monkeypatch):
        series = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))
        update = store.update

        def deleted_meanwhile(reminder):
            store.mark_deleting([reminder.id])
            update(reminder)

        monkeypatch.setattr(store, "update", deleted_meanwhile)

        await dispatcher.fire(series.id, foreground=True)

        assert series.id not in dispatcher.pending
        assert app.router.occurrence_state(series.id) == OccurrenceState.PENDING


class TestInteraction:

    @pytest.mark.asyncio
    async def test_complete_one_off(self, app, dispatcher, store, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(reminder.id, foreground=False)

        await dispatcher.interact(NotificationPayload(reminder_id=reminder.id), ActionKind.COMPLETE)

        assert store.require(reminder.id).is_completed is True
        assert dispatcher.pending == {}
        assert app.router.occurrence_state(reminder.id) == OccurrenceState.COMPLETED
        assert app.router.badge_count == 0
        assert app.banners.visible == []

    @pytest.mark.asyncio
    async def test_complete_series_keeps_it_active(self, app, dispatcher, store, clock):
        reminder = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)

        await dispatcher.interact(NotificationPayload(reminder_id=reminder.id), ActionKind.COMPLETE)

        saved = store.require(reminder.id)
        assert saved.is_completed is False
        assert saved.fire_at == local(2024, 1, 1, 9, 0)
        assert list(dispatcher.pending) == [reminder.id]

    @pytest.mark.asyncio
    async def test_interaction_with_completed_reminder_is_noop(self, app, dispatcher, store):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        await app.service.complete_reminder(reminder.id)
        cancels = list(dispatcher.cancel_calls)

        await dispatcher.interact(NotificationPayload(reminder_id=reminder.id), ActionKind.SNOOZE)
        await dispatcher.interact(NotificationPayload(reminder_id="gone"), ActionKind.COMPLETE)

        assert dispatcher.cancel_calls == cancels
        assert store.require(reminder.id).fire_at == local(2024, 1, 1, 9, 0)

    @pytest.mark.asyncio
    async def test_open_surfaces_banner(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(reminder.id, foreground=False)

        await dispatcher.interact(NotificationPayload(reminder_id=reminder.id), ActionKind.OPEN)

        assert [b.reminder_id for b in app.banners.visible] == [reminder.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [ActionKind.OPEN, ActionKind.COMPLETE])
    async def test_action_after_background_delivery_keeps_next_banner(self, app, dispatcher, clock, action):
        series = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(series.id, foreground=False)

        await dispatcher.interact(NotificationPayload(reminder_id=series.id), action)

        assert [(b.reminder_id, b.fire_at) for b in app.banners.visible] == [(series.id, local(2024, 1, 1, 9, 0))]

        app.banners.dismiss(series.id)
        clock.set(local(2024, 1, 2, 9, 0))
        await dispatcher.fire(series.id, foreground=True)

        assert [b.fire_at for b in app.banners.visible] == [local(2024, 1, 2, 9, 0)]

    @pytest.mark.asyncio
    async def test_completion_releases_occurrence_state(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(reminder.id, foreground=True)

        await app.service.complete_reminder(reminder.id)

        assert reminder.id not in app.router._states
        assert reminder.id not in app.router._delivered_at
        assert reminder.id not in app.coordinator._status
        assert app.router.occurrence_state(reminder.id) == OccurrenceState.COMPLETED

    @pytest.mark.asyncio
    async def test_snooze_one_off(self, app, dispatcher, store, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0, 40))
        await dispatcher.fire(reminder.id, foreground=True)

        snoozed = await app.service.snooze_reminder(reminder.id)

        assert snoozed.id == reminder.id
        assert store.require(reminder.id).fire_at == local(2024, 1, 1, 9, 10)
        assert dispatcher.pending[reminder.id][0] == local(2024, 1, 1, 9, 10)
        assert app.banners.visible == []

    @pytest.mark.asyncio
    async def test_snooze_series_spins_off_one_off(self, app, dispatcher, store, clock):
        series = await app.service.create_reminder("Standup", local(2024, 1, 1, 9, 0), DAILY)
        clock.set(local(2024, 1, 1, 9, 0))
        await dispatcher.fire(series.id, foreground=True)

        spin_off = await app.service.snooze_reminder(series.id, minutes=15)

        assert spin_off.title == "Standup (Snoozed)"
        assert spin_off.parent_reminder_id == series.id
        assert spin_off.repeats is False
        assert dispatcher.pending[spin_off.id][0] == local(2024, 1, 1, 9, 15)
        assert dispatcher.pending[series.id][0] == local(2024, 1, 2, 9, 0)


class TestBadge:

    @pytest.mark.asyncio
    async def test_recompute_counts_due_active_reminders(self, app, store, clock):
        store.insert(Reminder(title="Overdue", fire_at=local(2024, 1, 1, 7, 0)))
        store.insert(Reminder(title="Later", fire_at=local(2024, 1, 1, 12, 0)))
        store.insert(Reminder(title="Done", fire_at=local(2024, 1, 1, 6, 0), is_completed=True))

        assert await app.router.recompute_badge() == 1

    @pytest.mark.asyncio
    async def test_becoming_active_resets_badge(self, app, dispatcher, clock):
        reminder = await app.service.create_reminder("Dentist", local(2024, 1, 1, 9, 0))
        clock.set(local(2024, 1, 1, 9, 0))
        await app.did_enter_background()
        await dispatcher.fire(reminder.id, foreground=False)
        seen = []
        app.router.subscribe_badge(seen.append)
        clears = dispatcher.clear_count

        await app.did_become_active()

        assert app.router.badge_count == 0
        assert dispatcher.badge_count == 0
        assert dispatcher.clear_count == clears + 1
        assert seen == [0]


class TestCatchUp:

    @pytest.mark.asyncio
    async def test_recently_due_reminder_is_surfaced(self, app, store, clock):
        recent = store.insert(Reminder(title="Recent", fire_at=local(2024, 1, 1, 7, 55)))
        store.insert(Reminder(title="Old", fire_at=local(2024, 1, 1, 7, 30)))

        assert app.router.catch_up_past_due() == 1
        assert [b.reminder_id for b in app.banners.visible] == [recent.id]

    @pytest.mark.asyncio
    async def test_catch_up_does_not_repeat(self, app, store, clock):
        store.insert(Reminder(title="Recent", fire_at=local(2024, 1, 1, 7, 55)))
        app.router.catch_up_past_due()
        app.banners.dismiss_all()

        assert app.router.catch_up_past_due() == 0
