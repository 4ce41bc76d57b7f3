"""Forwarding uploaded events to another Lambda function, asynchronously.

The ``service`` object has an ``invoke(params)`` method taking the request as
a dict (``FunctionName``, ``Qualifier``, ``InvocationType``, ``LogType``,
``Payload``) and raising on failure.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


class LambdaInvokeError(Exception):
    """The events could not be handed to the downstream function."""


def _json_default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


@dataclass
class LambdaEvents:
    """The payload sent to the downstream function."""

    source: str
    items: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "items": list(self.items)}


class LambdaClient:
    """Invokes one function version with batches of events."""

    def __init__(self, service: Any, function_name: str, qualifier: str) -> None:
        self.service = service
        self.function_name = function_name
        self.qualifier = qualifier

    def send(self, machine_id: str, events: LambdaEvents) -> None:
        """Invoke the function with the events as a fire-and-forget call."""
        try:
            payload = json.dumps(
                events.to_dict(), separators=(",", ":"), default=_json_default
            ).encode()
        except (TypeError, ValueError) as exc:
            raise LambdaInvokeError(f"failed json marshall lambda payload events: {exc}") from exc

        params = {
            "FunctionName": self.function_name,
            "Qualifier": self.qualifier,
            "InvocationType": "Event",
            "LogType": "None",
            "Payload": payload,
        }
        try:
            self.service.invoke(params)
        except Exception as exc:
            raise LambdaInvokeError(f"lambda:InvokeFunction call failed: {exc}") from exc