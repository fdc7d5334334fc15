"""
Actions Module
Periodic sweeps for reminders and missed-dose alerts
"""

from .reminder_engine import (
    ReminderCandidate,
    ReminderDispatcher
)

from .alert_engine import (
    AlertContext,
    MissedDoseDetector
)

from .sweep_scheduler import (
    start_scheduler,
    shutdown_scheduler
)


__all__ = [
    # Reminder Engine
    "ReminderCandidate",
    "ReminderDispatcher",

    # Alert Engine
    "AlertContext",
    "MissedDoseDetector",

    # Scheduler
    "start_scheduler",
    "shutdown_scheduler"
]
