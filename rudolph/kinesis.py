"""Forwarding uploaded events to a Kinesis data stream.

The ``service`` object has a ``put_records(params)`` method taking the
request as a dict (``Records``, ``StreamName``) and raising on failure.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


class KinesisClient:
    """Sends events to one Kinesis stream."""

    def __init__(self, service: Any, stream_name: str) -> None:
        self.service = service
        self.stream_name = stream_name

    def send(self, machine_id: str, events: Iterable[Any]) -> None:
        """Put every event as a record.

        The machine id is the partition key, so each machine's records land
        on the same shard.
        """
        records = [
            {
                "Data": json.dumps(event, separators=(",", ":"), default=_json_default).encode(),
                "PartitionKey": machine_id,
            }
            for event in events
        ]
        self.service.put_records({"Records": records, "StreamName": self.stream_name})