"""Reminder engine context and app lifecycle.

ReminderApp is built once per process and handed to whoever needs it.
It owns the store, dispatcher, coordinator, banner queue and router, and
exposes the lifecycle hooks the host calls: launch, did_become_active,
did_enter_background and shutdown.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import config
from logger import logger
from .banners import BannerQueue
from .coordinator import ReconcileReport, SchedulingCoordinator
from .dispatcher import NotificationDispatcher, SchedulerDispatcher
from .models import PermissionStatus
from .router import DeliveryRouter
from .service import ReminderService
from .store import ReminderStore

BANNER_SWEEP_JOB_ID = "banner_sweep"


class ReminderApp:
    """Service container plus lifecycle for the reminder engine."""

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.is_active = False

        self.coordinator = SchedulingCoordinator(store, dispatcher, clock=clock)
        self.banners = BannerQueue(store, clock=clock)
        self.router = DeliveryRouter(store, self.coordinator, self.banners, dispatcher, clock=clock)
        self.service = ReminderService(store, self.coordinator, self.router)

    @classmethod
    def create(
        cls,
        db_path: Optional[str] = None,
        permission_prompt: Optional[Callable[[], Awaitable[PermissionStatus]]] = None
    ) -> "ReminderApp":
        """Build the production wiring: SQLite store + APScheduler dispatcher."""
        scheduler = AsyncIOScheduler(timezone=config.TIMEZONE)
        app: Optional[ReminderApp] = None
        dispatcher = SchedulerDispatcher(
            scheduler,
            is_foreground=lambda: app is not None and app.is_active,
            permission_prompt=permission_prompt,
        )
        app = cls(ReminderStore(db_path or config.REMINDERS_DB), dispatcher, scheduler=scheduler)
        return app

    async def launch(self) -> ReconcileReport:
        """Start the engine.

        Reconciliation runs before anything else may touch dispatcher state.
        """
        self.dispatcher.bind_loop(asyncio.get_running_loop())
        self.router.attach()

        await self.coordinator.refresh_permission()
        report = await self.coordinator.reconcile_on_launch()

        if self.scheduler is not None:
            self.scheduler.add_job(
                self._sweep_banners,
                trigger=IntervalTrigger(seconds=config.BANNER_SWEEP_SECONDS),
                id=BANNER_SWEEP_JOB_ID,
                name="Expire in-app banners",
                replace_existing=True
            )
            if not self.scheduler.running:
                self.scheduler.start()
                logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs")

        await self.did_become_active()
        return report

    async def did_become_active(self) -> None:
        """App came to the foreground."""
        self.is_active = True
        await self.router.reset_badge()
        self.router.catch_up_past_due()

    async def did_enter_background(self) -> None:
        """App left the foreground; deliveries go to the system from now on."""
        self.is_active = False
        self.banners.dismiss_all()

    async def send_test_notification(self, delay_seconds: int = 5) -> str:
        """Fire a diagnostic alert through the dispatcher."""
        return await self.dispatcher.schedule_test_notification(delay_seconds)

    def shutdown(self) -> None:
        """Stop the scheduler and close the store."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.store.close()
        logger.info("Reminder engine stopped")

    async def _sweep_banners(self) -> None:
        self.banners.expire()
