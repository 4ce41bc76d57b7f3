"""Deciding when a sensor must clean sync, and where its feed sync resumes."""

from __future__ import annotations

import hashlib
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from rudolph.clock import TimeProvider, parse_rfc3339, rfc3339

log = logging.getLogger(__name__)

# A modulus giving a cyclic spread of refresh days across machines.
MOD = 11.0
DAYS_TO_ELAPSE_UNTIL_REFRESH_CLEAN_SYNC = 7
NO_PREVIOUS_CLEAN_SYNC = 99999999


def machine_id_to_int(machine_id: str) -> int:
    """A stable number from 0 to 10 derived from the machine id."""
    digest = hashlib.sha256(machine_id.encode()).hexdigest()
    return int(math.fmod(float(int(digest, 16)), MOD))


def determine_periodic_refresh_clean_sync(machine_id: str, days_since_last_sync: int) -> bool:
    """Whether enough days have passed to force a refresh clean sync.

    Each machine waits seven days plus its own offset, so that clean syncs
    do not all arrive at once. Raises ValueError if the offset is out of range.
    """
    chaos = machine_id_to_int(machine_id)
    if chaos > 11 or chaos < 0:
        raise ValueError("chaos was greater than 11 or less than 0")
    return days_since_last_sync >= DAYS_TO_ELAPSE_UNTIL_REFRESH_CLEAN_SYNC + chaos


def days_since_last_clean_sync(time_provider: TimeProvider, sync_state: Any) -> int:
    """Full days since the previous clean sync.

    Returns a very large number when no clean sync is known to have happened.
    """
    if sync_state is None:
        return NO_PREVIOUS_CLEAN_SYNC
    last_clean_sync = getattr(sync_state, "last_clean_sync", "") or ""
    if not last_clean_sync:
        return NO_PREVIOUS_CLEAN_SYNC
    try:
        last_time = parse_rfc3339(last_clean_sync)
    except ValueError:
        log.warning(
            "failed to determine number of days since last sync from value: (%s); "
            "going to clean sync anyway",
            last_clean_sync,
        )
        return NO_PREVIOUS_CLEAN_SYNC

    now = time_provider.now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int((now - last_time) / timedelta(hours=24))


def determine_clean_sync_by_rule_count(preflight_request: Any) -> bool:
    """A sensor that reports no rules at all gets a clean sync."""
    rule_count = (
        preflight_request.binary_rule_count
        + preflight_request.certificate_rule_count
        + preflight_request.compiler_rule_count
        + preflight_request.transitive_rule_count
    )
    return rule_count == 0


def feed_sync_state_cursor(time_provider: TimeProvider, sync_state: Any) -> tuple[str, bool]:
    """The feed cursor to continue from, and whether a clean sync is forced.

    A previous cursor is inherited; without one the cursor starts now and a
    clean sync is forced.
    """
    cursor = getattr(sync_state, "feed_sync_cursor", "") if sync_state is not None else ""
    if cursor:
        return cursor, False
    return rfc3339(time_provider.now()), True


class CleanSyncService:
    """Decides whether a machine's next sync should be a clean one."""

    def __init__(self, time_provider: TimeProvider) -> None:
        self.time_provider = time_provider

    def determine_clean_sync(self, machine_id: str, preflight_request: Any, sync_state: Any) -> bool:
        if determine_clean_sync_by_rule_count(preflight_request):
            return True
        days = days_since_last_clean_sync(self.time_provider, sync_state)
        return determine_periodic_refresh_clean_sync(machine_id, days)