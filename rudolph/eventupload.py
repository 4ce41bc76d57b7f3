"""The /eventupload endpoint, which forwards sensor execution events downstream."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from http import HTTPStatus
from typing import Any, Callable

from rudolph.gateway import (
    ERR_INTERNAL_SERVER_ERROR,
    ERR_INVALID_BODY,
    ERR_INVALID_MEDIA_TYPE,
    ERR_INVALID_PATH_PARAMETER,
    ERR_NO_PATH_PARAMETER,
    Handler,
    ProxyRequest,
    ProxyResponse,
    api_response,
)
from rudolph.invoker import LambdaEvents

log = logging.getLogger(__name__)

RUDOLPH_DIRECT_SOURCE = "rudolph-direct"
_RESOURCE = "/eventupload/{machine_id}"
_JSON = "application/json"
_MACHINE_ID = re.compile(
    r"[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}"
)


class EventForwardingError(Exception):
    """Events could not be handed to a downstream destination."""


class _Rejected(ValueError):
    """A request was refused; carries the response to send back."""

    def __init__(self, response: ProxyResponse) -> None:
        super().__init__(f"request rejected with status {response.status_code}")
        self.response = response


def _as_str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected an integer, got {value!r}")
    return value


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    return float(value)


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {value!r}")
    return [_as_str(v) for v in value]


def _json_field(
    name: str,
    parse: Callable[[Any], Any],
    *,
    default: Any = None,
    omitempty: bool = False,
) -> Any:
    return field(default=default, metadata={"json": name, "parse": parse, "omitempty": omitempty})


def _from_json_object(cls: Any, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {data!r}")
    kwargs = {}
    for f in fields(cls):
        value = data.get(f.metadata["json"])
        if value is None:
            continue
        kwargs[f.name] = f.metadata["parse"](value)
    return cls(**kwargs)


def _to_json_object(obj: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if f.metadata["omitempty"] and not value:
            continue
        if isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        out[f.metadata["json"]] = value
    return out


@dataclass
class SigningEntry:
    """One certificate in the signing chain of an executed binary."""

    certificate_name: str = _json_field("cn", _as_str, default="")
    valid_until: int = _json_field("valid_until", _as_int, default=0)
    organization: str = _json_field("org", _as_str, default="")
    valid_from: int = _json_field("valid_from", _as_int, default=0)
    organizational_unit: str = _json_field("ou", _as_str, default="")
    sha256: str = _json_field("sha256", _as_str, default="")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SigningEntry:
        return _from_json_object(cls, data)

    def to_dict(self) -> dict[str, Any]:
        return _to_json_object(self)


def _as_signing_chain(value: Any) -> list[SigningEntry]:
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {value!r}")
    return [SigningEntry.from_dict(v) for v in value]


@dataclass
class EventUploadEvent:
    """A single execution event reported by a sensor."""

    parent_name: str = _json_field("parent_name", _as_str, default="")
    file_path: str = _json_field("file_path", _as_str, default="")
    quarantine_timestamp: int = _json_field("quarantine_timestamp", _as_int, default=0)
    logged_in_users: list[str] | None = _json_field("logged_in_users", _as_str_list)
    signing_chain: list[SigningEntry] | None = _json_field("signing_chain", _as_signing_chain)
    parent_process_id: int = _json_field("ppid", _as_int, default=0)
    executing_user: str = _json_field("executing_user", _as_str, default="")
    file_name: str = _json_field("file_name", _as_str, default="")
    execution_time: float = _json_field("execution_time", _as_float, default=0.0)
    file_sha256: str = _json_field("file_sha256", _as_str, default="")
    decision: str = _json_field("decision", _as_str, default="")
    process_id: int = _json_field("pid", _as_int, default=0)
    current_sessions: list[str] | None = _json_field("current_sessions", _as_str_list)
    file_bundle_id: str = _json_field("file_bundle_id", _as_str, default="", omitempty=True)
    file_bundle_path: str = _json_field("file_bundle_path", _as_str, default="", omitempty=True)
    file_bundle_executable_rel_path: str = _json_field(
        "file_bundle_executable_rel_path", _as_str, default="", omitempty=True
    )
    file_bundle_name: str = _json_field("file_bundle_name", _as_str, default="", omitempty=True)
    file_bundle_version: str = _json_field(
        "file_bundle_version", _as_str, default="", omitempty=True
    )
    file_bundle_short_version_string: str = _json_field(
        "file_bundle_version_string", _as_str, default="", omitempty=True
    )
    file_bundle_hash: str = _json_field("file_bundle_hash", _as_str, default="", omitempty=True)
    file_bundle_hash_milliseconds: float = _json_field(
        "file_bundle_hash_millis", _as_float, default=0.0, omitempty=True
    )
    file_bundle_binary_count: int = _json_field(
        "file_bundle_binary_count", _as_int, default=0, omitempty=True
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EventUploadEvent:
        return _from_json_object(cls, data)

    def to_dict(self) -> dict[str, Any]:
        return _to_json_object(self)


@dataclass
class EventUploadRequest:
    """The body of a POST to /eventupload."""

    events: list[EventUploadEvent] = field(default_factory=list)

    @classmethod
    def from_json(cls, body: str) -> EventUploadRequest:
        """Parse a request body; raises ValueError when it is not a valid request."""
        data = json.loads(body)
        if not isinstance(data, Mapping):
            raise ValueError("request body must be a JSON object")
        raw_events = data.get("events")
        if raw_events is None:
            return cls()
        if not isinstance(raw_events, list):
            raise ValueError("events must be a list")
        return cls(events=[EventUploadEvent.from_dict(e) for e in raw_events])


@dataclass
class ForwardedEventUploadEvent:
    """An event tagged with the machine that reported it."""

    machine_id: str
    event: EventUploadEvent

    def to_dict(self) -> dict[str, Any]:
        return {"machine_id": self.machine_id, **self.event.to_dict()}


def convert_events(
    machine_id: str, events: Iterable[EventUploadEvent]
) -> list[ForwardedEventUploadEvent]:
    """Tag every event with the machine id."""
    return [ForwardedEventUploadEvent(machine_id=machine_id, event=e) for e in events]


def _machine_id(request: ProxyRequest) -> str:
    machine_id = request.path_parameters.get("machine_id", "")
    if not machine_id:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_NO_PATH_PARAMETER))
    if _MACHINE_ID.fullmatch(machine_id) is None:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_PATH_PARAMETER))
    return machine_id


def parse_request(request: ProxyRequest) -> tuple[str, EventUploadRequest]:
    """Return the machine id and parsed body.

    Raises ValueError carrying the error response in ``response`` when the
    request cannot be served.
    """
    if request.resource != _RESOURCE or request.http_method != "POST":
        log.error("ASSERTION FAILED: Reached unreachable route code under /eventupload")
        raise _Rejected(api_response(HTTPStatus.METHOD_NOT_ALLOWED, None))

    machine_id = _machine_id(request)

    headers = request.headers
    if headers.get("content-type") != _JSON and headers.get("Content-Type") != _JSON:
        raise _Rejected(api_response(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, ERR_INVALID_MEDIA_TYPE))

    if not request.body:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_BODY))

    try:
        parsed = EventUploadRequest.from_json(request.body)
    except ValueError as exc:
        log.info("%s: request body unmarshal was not successful", exc)
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_BODY)) from exc

    return machine_id, parsed


def send_to_firehose(client: Any, machine_id: str, events: Iterable[EventUploadEvent]) -> None:
    """Forward events to Firehose; raises EventForwardingError on failure."""
    try:
        client.send(machine_id, convert_events(machine_id, events))
    except Exception as exc:
        log.error("%s: upload to firehose was not successful", exc)
        raise EventForwardingError(f"failed to send events to AWS Firehose: {exc}") from exc


def send_to_kinesis(client: Any, machine_id: str, events: Iterable[EventUploadEvent]) -> None:
    """Forward events to Kinesis; raises EventForwardingError on failure."""
    try:
        client.send(machine_id, convert_events(machine_id, events))
    except Exception as exc:
        log.error("Kinesis Failed: %s", exc)
        raise EventForwardingError(f"failed to send events to AWS Kinesis: {exc}") from exc


def send_to_lambda(client: Any, machine_id: str, events: Iterable[EventUploadEvent]) -> None:
    """Forward events to a Lambda function; raises EventForwardingError on failure."""
    payload = LambdaEvents(source=RUDOLPH_DIRECT_SOURCE, items=convert_events(machine_id, events))
    try:
        client.send(machine_id, payload)
    except Exception as exc:
        log.error("Lambda Failed: %s", exc)
        raise EventForwardingError(f"failed to send events to AWS Lambda: {exc}") from exc


class PostEventuploadHandler(Handler):
    """Serves POST /eventupload/{machine_id}.

    Each destination is enabled by passing its client; with none, events are
    accepted and dropped.
    """

    def __init__(
        self,
        firehose_client: Any = None,
        kinesis_client: Any = None,
        lambda_client: Any = None,
    ) -> None:
        self.firehose_client = firehose_client
        self.kinesis_client = kinesis_client
        self.lambda_client = lambda_client
        self._booted = False

    def boot(self) -> None:
        self._booted = True

    def handles(self, request: ProxyRequest) -> bool:
        return request.resource == _RESOURCE and request.http_method == "POST"

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        log.info("EventUploadHandler request: %r", request)
        try:
            machine_id, parsed = parse_request(request)
        except _Rejected as rejected:
            return rejected.response

        destinations = [
            (self.firehose_client, send_to_firehose),
            (self.kinesis_client, send_to_kinesis),
            (self.lambda_client, send_to_lambda),
        ]
        enabled = [(client, send) for client, send in destinations if client is not None]
        if not enabled:
            log.info("No eventupload handlers are enabled")
            return api_response(HTTPStatus.OK, {"status": "ok"})

        try:
            for client, send in enabled:
                send(client, machine_id, parsed.events)
        except EventForwardingError:
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, ERR_INTERNAL_SERVER_ERROR)

        return api_response(HTTPStatus.OK, {"status": "ok"})