"""
Session history reconstructed from point-in-time snapshots.

EnumerateAccountHistoryStatistics only answers "as of this moment, what were
the device's latest per-source stats". We sample one snapshot per day for the
last 7 days and one every second day after that, then diff neighbouring
snapshots: when a channel's last-session timestamp moved, a session finished
in that interval and the newer snapshot's stat bundle describes it.

The oldest snapshot has nothing older to compare against, so every channel
it carries is reported.

Known limitation: a channel that ran more than once inside one sampled
interval shows up as a single session (the latest). Counts are a lower bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterator, Optional

from cove.client import CoveClient, RpcCall
from cove.columns import (
    CHANNELS,
    HISTORY_COLUMNS,
    HISTORY_PREFIXES,
    Stat,
    code,
    flatten_settings,
    from_unix,
    to_number,
)
from cove.errors import MappingError
from cove.mappers import result_rows
from cove.models import SessionHistoryEntry, utc_now
from cove.status import map_session_status

logger = logging.getLogger(__name__)

HISTORY_METHOD = "EnumerateAccountHistoryStatistics"
DAILY_SAMPLES = 7


@dataclass
class Snapshot:
    timeslice: int  # epoch seconds
    settings: dict[str, Any]

    def number(self, column: str) -> Optional[float]:
        try:
            return to_number(self.settings.get(column), column)
        except MappingError:
            return None


def sample_day_offsets(days: int) -> Iterator[int]:
    """0..6 daily, then every second day up to the window."""
    offset = 0
    while offset < days:
        yield offset
        offset += 1 if offset < DAILY_SAMPLES else 2


def timeslices(days: int, now: Optional[datetime] = None) -> list[int]:
    """End-of-day epoch seconds for each sampled day, newest first."""
    now = now or utc_now()
    end_of_today = now.replace(hour=23, minute=59, second=59, microsecond=0)
    return [
        int((end_of_today - timedelta(days=offset)).timestamp())
        for offset in sample_day_offsets(days)
    ]


def build_history_calls(
    root_partner_id: int, device_id: int, slices: list[int]
) -> list[RpcCall]:
    return [
        RpcCall(
            HISTORY_METHOD,
            {
                "timeslice": ts,
                "query": {
                    "PartnerId": root_partner_id,
                    "Filter": f"(AU == {device_id})",
                    "Columns": HISTORY_COLUMNS,
                    "StartRecordNumber": 0,
                    "RecordsCount": 1,
                },
            },
        )
        for ts in slices
    ]


def parse_snapshot(result: Any, timeslice: int) -> Optional[Snapshot]:
    rows = result_rows(result)
    if not rows or not isinstance(rows[0].get("Settings"), list):
        return None
    return Snapshot(timeslice=timeslice, settings=flatten_settings(rows[0]["Settings"]))


def reconstruct_sessions(snapshots: list[Snapshot]) -> list[SessionHistoryEntry]:
    ordered = sorted(snapshots, key=lambda s: s.timeslice, reverse=True)
    entries: list[SessionHistoryEntry] = []

    for index, newer in enumerate(ordered):
        older = ordered[index + 1] if index + 1 < len(ordered) else None
        for prefix in HISTORY_PREFIXES:
            last_session = newer.number(code(prefix, Stat.LAST_SESSION_TIMESTAMP))
            if not last_session or last_session < 0:
                continue
            if (
                older is not None
                and older.number(code(prefix, Stat.LAST_SESSION_TIMESTAMP)) == last_session
            ):
                continue
            try:
                timestamp = from_unix(last_session)
            except MappingError:
                logger.debug("Skipping %s session with timestamp %s", prefix, last_session)
                continue

            channel = CHANNELS[prefix]
            status_code = newer.number(code(prefix, Stat.LAST_SESSION_STATUS))
            entries.append(
                SessionHistoryEntry(
                    timestamp=timestamp,
                    data_source_type=channel.type,
                    data_source_label=channel.label,
                    status=map_session_status(
                        None if status_code is None else int(status_code)
                    ),
                    duration_seconds=newer.number(code(prefix, Stat.SESSION_DURATION)),
                    selected_count=newer.number(code(prefix, Stat.SELECTED_COUNT)),
                    processed_count=newer.number(code(prefix, Stat.PROCESSED_COUNT)),
                    selected_size_bytes=newer.number(code(prefix, Stat.SELECTED_SIZE)),
                    processed_size_bytes=newer.number(code(prefix, Stat.PROCESSED_SIZE)),
                    transferred_size_bytes=newer.number(code(prefix, Stat.SENT_SIZE)),
                    errors_count=newer.number(code(prefix, Stat.ERRORS_COUNT)),
                )
            )

    entries.sort(key=lambda e: e.timestamp, reverse=True)
    return entries


class HistoryReconstructor:
    def __init__(self, client: CoveClient):
        self.client = client

    async def fetch(
        self,
        root_partner_id: int,
        device_id: int,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> list[SessionHistoryEntry]:
        slices = timeslices(days, now)
        results = await self.client.call_batch(
            build_history_calls(root_partner_id, device_id, slices)
        )

        snapshots = []
        for ts, result in zip(slices, results):
            if result is None:
                continue
            snapshot = parse_snapshot(result, ts)
            if snapshot is not None:
                snapshots.append(snapshot)

        logger.info(
            "Device %s: %d/%d history snapshots usable", device_id, len(snapshots), len(slices)
        )
        return reconstruct_sessions(snapshots)
