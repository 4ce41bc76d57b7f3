"""The /preflight endpoint, which starts a sensor's sync."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from http import HTTPStatus
from typing import Any

from rudolph.clock import ConcreteTimeProvider, TimeProvider, rfc3339
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
from rudolph.preflight_sync import CleanSyncService, feed_sync_state_cursor

log = logging.getLogger(__name__)

_RESOURCE = "/preflight/{machine_id}"
_JSON = "application/json"
_MACHINE_ID = re.compile(
    r"[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}"
)


class _Rejected(ValueError):
    """A request was refused; carries the response to send back."""

    def __init__(self, response: ProxyResponse) -> None:
        super().__init__(f"request rejected with status {response.status_code}")
        self.response = response


def _json_field(name: str, default: Any) -> Any:
    return field(default=default, metadata={"json": name})


def _matches(value: Any, expected: type) -> bool:
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


@dataclass
class PreflightRequest:
    """The state a sensor reports at the start of a sync."""

    os_build: str = _json_field("os_build", "")
    santa_version: str = _json_field("santa_version", "")
    hostname: str = _json_field("hostname", "")
    os_version: str = _json_field("os_version", "")
    certificate_rule_count: int = _json_field("certificate_rule_count", 0)
    binary_rule_count: int = _json_field("binary_rule_count", 0)
    client_mode: str = _json_field("client_mode", "")
    serial_number: str = _json_field("serial_num", "")
    primary_user: str = _json_field("primary_user", "")
    compiler_rule_count: int = _json_field("compiler_rule_count", 0)
    transitive_rule_count: int = _json_field("transitive_rule_count", 0)
    request_clean_sync: bool = _json_field("request_clean_sync", False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PreflightRequest:
        """Build from a decoded JSON object; raises ValueError on wrong types."""
        if not isinstance(data, Mapping):
            raise ValueError("request body must be a JSON object")
        kwargs = {}
        for f in fields(cls):
            name = f.metadata["json"]
            value = data.get(name)
            if value is None:
                continue
            if not _matches(value, type(f.default)):
                raise ValueError(f"unexpected value for {name}: {value!r}")
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class PreflightResponse:
    """The configuration sent back to the sensor."""

    client_mode: Any
    blocked_path_regex: str = ""
    allowed_path_regex: str = ""
    batch_size: int = 0
    enable_bundles: bool = False
    enabled_transitive_rules: bool = False
    clean_sync: bool = False
    full_sync_interval: int = 0
    upload_logs_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "client_mode": self.client_mode,
            "blocked_path_regex": self.blocked_path_regex,
            "allowed_path_regex": self.allowed_path_regex,
            "batch_size": self.batch_size,
            "enable_bundles": self.enable_bundles,
            "enable_transitive_rules": self.enabled_transitive_rules,
        }
        if self.clean_sync:
            out["clean_sync"] = True
        if self.full_sync_interval:
            out["full_sync_interval"] = self.full_sync_interval
        if self.upload_logs_url:
            out["upload_logs_url"] = self.upload_logs_url
        return out


def construct_preflight_response(machine_configuration: Any, clean_sync: bool) -> PreflightResponse:
    """The response for a machine's configuration.

    The clean sync flag is decided per sync, never taken from the stored
    configuration, since it tells the sensor to erase its rules.
    """
    return PreflightResponse(
        client_mode=machine_configuration.client_mode,
        blocked_path_regex=machine_configuration.blocked_path_regex,
        allowed_path_regex=machine_configuration.allowed_path_regex,
        batch_size=machine_configuration.batch_size,
        enable_bundles=machine_configuration.enable_bundles,
        enabled_transitive_rules=machine_configuration.enabled_transitive_rules,
        upload_logs_url=machine_configuration.upload_logs_url,
        full_sync_interval=machine_configuration.full_sync_interval,
        clean_sync=clean_sync,
    )


def _machine_id(request: ProxyRequest) -> str:
    machine_id = request.path_parameters.get("machine_id", "")
    if not machine_id:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_NO_PATH_PARAMETER))
    if _MACHINE_ID.fullmatch(machine_id) is None:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_PATH_PARAMETER))
    return machine_id


def parse_request(request: ProxyRequest) -> PreflightRequest:
    """Parse the request body.

    Raises ValueError carrying the error response in ``response`` when the
    body is not acceptable.
    """
    headers = request.headers
    if headers.get("content-type") != _JSON and headers.get("Content-Type") != _JSON:
        raise _Rejected(api_response(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, ERR_INVALID_MEDIA_TYPE))
    if not request.body:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_BODY))
    try:
        return PreflightRequest.from_dict(json.loads(request.body))
    except ValueError as exc:
        raise _Rejected(api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_BODY)) from exc


class PostPreflightHandler(Handler):
    """Serves POST /preflight/{machine_id}.

    ``machine_configuration_service`` provides ``get_intended_config(machine_id)``.
    ``state_tracking_service`` provides
    ``save_sensor_data_from_preflight_request(machine_id, request)``,
    ``get_sync_state(machine_id)`` and ``save_sync_state(machine_id,
    clean_sync, last_clean_sync, batch_size, feed_sync_cursor)``.
    """

    def __init__(
        self,
        time_provider: TimeProvider | None = None,
        machine_configuration_service: Any = None,
        state_tracking_service: Any = None,
        clean_sync_service: Any = None,
    ) -> None:
        self.time_provider = time_provider or ConcreteTimeProvider()
        self.machine_configuration_service = machine_configuration_service
        self.state_tracking_service = state_tracking_service
        self.clean_sync_service = clean_sync_service or CleanSyncService(self.time_provider)
        self._booted = False

    def boot(self) -> None:
        if self._booted:
            return
        if self.machine_configuration_service is None or self.state_tracking_service is None:
            raise RuntimeError(
                "preflight handler needs a machine configuration service and a state tracking service"
            )
        self._booted = True

    def handles(self, request: ProxyRequest) -> bool:
        return request.resource == _RESOURCE and request.http_method == "POST"

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        try:
            machine_id = _machine_id(request)
            preflight_request = parse_request(request)
        except _Rejected as rejected:
            return rejected.response
        return self._handle_preflight(machine_id, preflight_request)

    def _handle_preflight(self, machine_id: str, preflight_request: PreflightRequest) -> ProxyResponse:
        tracking = self.state_tracking_service
        try:
            tracking.save_sensor_data_from_preflight_request(machine_id, preflight_request)
            configuration = self.machine_configuration_service.get_intended_config(machine_id)
            prev_sync_state = tracking.get_sync_state(machine_id)
        except Exception as exc:
            log.error("preflight failed for %s: %s", machine_id, exc)
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, ERR_INTERNAL_SERVER_ERROR)

        feed_sync_cursor = ""
        if preflight_request.request_clean_sync:
            perform_clean_sync = True
        else:
            feed_sync_cursor, perform_clean_sync = feed_sync_state_cursor(
                self.time_provider, prev_sync_state
            )
            if not perform_clean_sync:
                try:
                    perform_clean_sync = self.clean_sync_service.determine_clean_sync(
                        machine_id, preflight_request, prev_sync_state
                    )
                except Exception as exc:
                    log.error("failed to determine clean sync: %s", exc)
                    return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, exc)

        if perform_clean_sync:
            last_clean_sync = rfc3339(self.time_provider.now())
        else:
            last_clean_sync = prev_sync_state.last_clean_sync

        try:
            tracking.save_sync_state(
                machine_id,
                perform_clean_sync,
                last_clean_sync,
                configuration.batch_size,
                feed_sync_cursor,
            )
        except Exception as exc:
            log.error("Encountered error trying to save new sync state: %s", exc)
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, exc)

        return api_response(
            HTTPStatus.OK, construct_preflight_response(configuration, perform_clean_sync)
        )