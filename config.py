"""Global configuration for the Remind Me engine."""

import os
from datetime import time
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

# Local calendar used for all reminder arithmetic
TIMEZONE_NAME = os.getenv("REMINDERS_TIMEZONE", "Europe/London")
TIMEZONE = ZoneInfo(TIMEZONE_NAME)

# Data
DATA_DIR = Path(os.getenv("LOCALAPPDATA", ".")) / "remind-me"
REMINDERS_DB = os.getenv("REMINDERS_DB", str(DATA_DIR / "reminders.db"))

# Notification permission answer when no interactive prompt is wired in:
# "granted", "denied" or empty for "not decided yet"
NOTIFICATION_PERMISSION = os.getenv("NOTIFICATION_PERMISSION", "granted").strip().lower()
PERMISSION_TIMEOUT_SECONDS = float(os.getenv("PERMISSION_TIMEOUT_SECONDS", "30"))

# Snooze ("Snooze 10 min" action)
SNOOZE_MINUTES = int(os.getenv("SNOOZE_MINUTES", "10"))

# In-app banners
BANNER_DISPLAY_SECONDS = int(os.getenv("BANNER_DISPLAY_SECONDS", "8"))
BANNER_SWEEP_SECONDS = int(os.getenv("BANNER_SWEEP_SECONDS", "1"))
BANNER_SHOWN_RETENTION_HOURS = 24

# Past-due reminders newer than this are shown as banners when the app becomes active
CATCH_UP_WINDOW_MINUTES = int(os.getenv("CATCH_UP_WINDOW_MINUTES", "10"))

# Fire time for custom-date occurrences when the rule doesn't carry one (HH:MM)
_custom_time = os.getenv("CUSTOM_DATES_FIRE_TIME", "00:00")
CUSTOM_DATES_FIRE_TIME = time(int(_custom_time.split(":")[0]), int(_custom_time.split(":")[1]))

# Logging
LOG_DIR = Path(os.getenv("REMINDERS_LOG_DIR", str(DATA_DIR / "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_LEVEL = os.getenv("REMINDERS_LOG_LEVEL", "INFO").upper()
