# -*- coding: utf-8 -*-
"""
Smart publish schedule

Spreads publish instants evenly over the next day, starting at the next
top of the hour (one hour from now, truncated to the hour).
"""

from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from config import publish_config


def first_slot(now: datetime, lead_hours: int = None) -> datetime:
    """now + lead, truncated to the hour"""
    if lead_hours is None:
        lead_hours = publish_config.schedule_lead_hours
    start = now + timedelta(hours=lead_hours)
    return start.replace(minute=0, second=0, microsecond=0)


def smart_schedule(
    item_ids: Sequence[str],
    now: datetime,
    window_hours: int = None,
    lead_hours: int = None,
) -> List[Tuple[str, datetime]]:
    """
    Assign publish instants in input order.

    1 item  -> [first_slot]
    n items -> first_slot + k * (window / n), k = 0..n-1
    """
    if window_hours is None:
        window_hours = publish_config.schedule_window_hours

    count = len(item_ids)
    if count == 0:
        return []

    start = first_slot(now, lead_hours)
    interval = timedelta(hours=window_hours) / count if count > 1 else timedelta(0)
    return [(item_id, start + interval * index) for index, item_id in enumerate(item_ids)]
