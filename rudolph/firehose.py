"""Forwarding uploaded events to a Firehose delivery stream.

The ``service`` object has a ``put_record_batch(params)`` method taking the
request as a dict (``DeliveryStreamName``, ``Records``) and returning the
response dict (``FailedPutCount``, ``RequestResponses``), raising on failure.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Mapping
from itertools import islice
from typing import Any

log = logging.getLogger(__name__)

MAX_RETRIES = 3
MAX_RECORDS = 500

_INVALID_KMS_RESOURCE = "InvalidKMSResourceException"
_SERVICE_UNAVAILABLE = "ServiceUnavailableException"
_LIMIT_EXCEEDED = "LimitExceededException"


class FirehoseError(Exception):
    """Firehose rejected records in a way that cannot be retried."""


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def event_batches(events: Iterable[Any], limit: int = MAX_RECORDS) -> list[list[Any]]:
    """Split events into consecutive batches of at most ``limit`` items."""
    if limit < 1:
        raise ValueError("batch limit must be positive")
    remaining = iter(events)
    batches = []
    while batch := list(islice(remaining, limit)):
        batches.append(batch)
    return batches


class FirehoseClient:
    """Sends events to one delivery stream in batches, retrying failed records."""

    def __init__(self, service: Any, stream_name: str) -> None:
        self.service = service
        self.stream_name = stream_name

    def send(self, machine_id: str, events: Iterable[Any]) -> None:
        """Upload every event, one JSON line per record."""
        for batch in event_batches(events):
            self._send_batch(batch)

    def _send_batch(self, batch: list[Any]) -> None:
        response: Mapping[str, Any] | None = None
        for _ in range(1, MAX_RETRIES):
            if response is not None:
                batch = self._failed_records(response, batch)
                if not batch:
                    return
            response = self._put_record_batch(batch)
            if not response.get("FailedPutCount"):
                return

    def _failed_records(self, response: Mapping[str, Any], batch: list[Any]) -> list[Any]:
        failed = []
        for result, event in zip(response.get("RequestResponses", ()), batch):
            if result.get("RecordId") is not None:
                continue
            message = result.get("ErrorMessage")
            if message in (_INVALID_KMS_RESOURCE, _LIMIT_EXCEEDED):
                raise FirehoseError(message)
            if message == _SERVICE_UNAVAILABLE:
                time.sleep(1)
            if result.get("ErrorCode") is not None or message is not None:
                failed.append(event)
        log.info("retrying a total of %d failed records", len(failed))
        return failed

    def _put_record_batch(self, batch: list[Any]) -> Mapping[str, Any]:
        records = [
            {
                "Data": json.dumps(event, separators=(",", ":"), default=_json_default).encode()
                + b"\n"
            }
            for event in batch
        ]
        try:
            return self.service.put_record_batch(
                {"DeliveryStreamName": self.stream_name, "Records": records}
            )
        except Exception as exc:
            log.error("PutRecordBatch err: %s", exc)
            raise