#!/usr/bin/env python3
"""Run the reminder engine until interrupted.

Usage:
    python main.py
    python main.py --db /tmp/reminders.db --test-notification
"""

import argparse
import asyncio
import signal

from logger import logger
from reminders import ReminderApp


async def run(db_path: str | None, test_notification: bool) -> None:
    app = ReminderApp.create(db_path=db_path)
    report = await app.launch()
    logger.info(f"Launch complete: {report.registered} alert(s) registered, {report.orphans_cancelled} orphan(s) cancelled")

    if test_notification:
        await app.send_test_notification()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    try:
        await stop.wait()
    finally:
        app.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Remind Me reminder engine")
    parser.add_argument("--db", help="Path to the reminders database")
    parser.add_argument("--test-notification", action="store_true", help="Send a test notification after launch")
    args = parser.parse_args()

    asyncio.run(run(args.db, args.test_notification))


if __name__ == "__main__":
    main()
