"""
Tools Package
Clock, schedule expansion and notification delivery
"""

from .clock import SystemClock, FixedClock, system_clock

from .scheduler import (
    ObligationKey,
    parse_clock_time,
    catalog_weekday,
    is_active_on,
    expand_schedule,
    expand_for_dates,
    recent_dates
)

from .notification_service import (
    NotificationTransport,
    NotificationService,
    NotificationType,
    DeliveryResult,
    render
)

__all__ = [
    # Clock
    "SystemClock",
    "FixedClock",
    "system_clock",

    # Schedule Expander
    "ObligationKey",
    "parse_clock_time",
    "catalog_weekday",
    "is_active_on",
    "expand_schedule",
    "expand_for_dates",
    "recent_dates",

    # Notification Service
    "NotificationTransport",
    "NotificationService",
    "NotificationType",
    "DeliveryResult",
    "render"
]
