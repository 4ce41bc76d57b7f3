"""The /ruledownload endpoint, which pages rules down to a sensor.

A sync makes successive POSTs to /ruledownload. The first carries an empty
body; every response that holds a ``cursor`` is answered by a request that
sends the cursor back unchanged. A response without a cursor ends the sync.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from http import HTTPStatus
from typing import Any, Protocol

from rudolph.dynamodb import PrimaryKey
from rudolph.gateway import (
    ERR_INTERNAL_SERVER_ERROR,
    ERR_INVALID_BODY,
    Handler,
    ProxyRequest,
    ProxyResponse,
    api_response,
)

log = logging.getLogger(__name__)

_RESOURCE = "/ruledownload/{machine_id}"


class RuledownloadStrategy(IntEnum):
    """How the server finds the rules for the next page."""

    # Pages over every global rule; the cursor key is a global rule sort key.
    CLEAN = 1
    # Pages over the rules feed from where the previous sync left off.
    INCREMENTAL = 2
    # Sends every machine-specific rule at once; the cursor key is ignored.
    MACHINE = 3


def _strategy(value: int) -> int:
    try:
        return RuledownloadStrategy(value)
    except ValueError:
        return value


def _int_field(data: Mapping[str, Any], name: str) -> int:
    value = data.get(name)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def _str_field(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {value!r}")
    return value


@dataclass
class RuledownloadCursor:
    """Pagination state exchanged with the sensor between requests.

    Besides the position in the table, it carries the sync strategy and
    batch size so the server needs no storage of its own between pages.
    """

    strategy: int = 0
    partition_key: str = ""
    sort_key: str = ""
    page_number: int = 0
    batch_size: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuledownloadCursor:
        """Build from a decoded JSON object; raises ValueError on wrong types."""
        if not isinstance(data, Mapping):
            raise ValueError(f"cursor must be a JSON object, got {data!r}")
        return cls(
            strategy=_strategy(_int_field(data, "strategy")),
            partition_key=_str_field(data, "pk"),
            sort_key=_str_field(data, "sk"),
            page_number=_int_field(data, "page"),
            batch_size=_int_field(data, "batch_size"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.strategy:
            out["strategy"] = int(self.strategy)
        if self.partition_key:
            out["pk"] = self.partition_key
        if self.sort_key:
            out["sk"] = self.sort_key
        if self.page_number:
            out["page"] = self.page_number
        if self.batch_size:
            out["batch_size"] = self.batch_size
        return out

    def last_evaluated_key(self) -> PrimaryKey | None:
        """The table key to resume from, or None when there is none."""
        if self.partition_key or self.sort_key:
            return PrimaryKey(partition_key=self.partition_key, sort_key=self.sort_key)
        return None

    def set_last_evaluated_key(self, key: PrimaryKey) -> None:
        self.partition_key = key.partition_key
        self.sort_key = key.sort_key

    def clone_for_next_page(self) -> RuledownloadCursor:
        """A cursor for the following page, with the same strategy and no key."""
        return RuledownloadCursor(
            strategy=self.strategy,
            batch_size=self.batch_size,
            page_number=self.page_number + 1,
        )


@dataclass
class RuledownloadRequest:
    """The body of a POST to /ruledownload."""

    cursor: RuledownloadCursor | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuledownloadRequest:
        """Build from a decoded JSON object; raises ValueError when it is not valid."""
        if not isinstance(data, Mapping):
            raise ValueError(f"request body must be a JSON object, got {data!r}")
        raw_cursor = data.get("cursor")
        if raw_cursor is None:
            return cls()
        return cls(cursor=RuledownloadCursor.from_dict(raw_cursor))


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class RuledownloadRule:
    """A single rule as the sensor receives it."""

    rule_type: Any
    policy: Any
    sha256: str
    custom_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "rule_type": _plain(self.rule_type),
            "policy": _plain(self.policy),
            "sha256": self.sha256,
        }
        if self.custom_message:
            out["custom_msg"] = self.custom_message
        return out


@dataclass
class RuledownloadResponse:
    """One page of rules; a cursor means more pages follow."""

    rules: list[RuledownloadRule] = field(default_factory=list)
    cursor: RuledownloadCursor | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"rules": [rule.to_dict() for rule in self.rules]}
        if self.cursor is not None:
            out["cursor"] = self.cursor.to_dict()
        return out


def rules_to_response_rules(rules: Iterable[Any]) -> list[RuledownloadRule]:
    """Convert stored rules, with ``rule_type``, ``policy``, ``sha256`` and
    ``custom_message`` attributes, into the form sent to sensors."""
    return [
        RuledownloadRule(
            rule_type=rule.rule_type,
            policy=rule.policy,
            sha256=rule.sha256,
            custom_message=getattr(rule, "custom_message", "") or "",
        )
        for rule in rules
    ]


class CursorService(Protocol):
    def construct_cursor(
        self, request: RuledownloadRequest, machine_id: str
    ) -> RuledownloadCursor: ...


class CursorRuleDownloader(Protocol):
    def handle(self, machine_id: str, cursor: RuledownloadCursor) -> ProxyResponse: ...


class MachineRuleDownloader(Protocol):
    def handle(self, machine_id: str, request: RuledownloadRequest) -> ProxyResponse: ...


class PostRuledownloadHandler(Handler):
    """Serves POST /ruledownload/{machine_id}.

    The cursor service turns the request into a cursor; the cursor's
    strategy picks the global, feed or machine rule downloader.
    """

    def __init__(
        self,
        cursor_service: CursorService | None = None,
        global_downloader: CursorRuleDownloader | None = None,
        feed_downloader: CursorRuleDownloader | None = None,
        machine_downloader: MachineRuleDownloader | None = None,
    ) -> None:
        self.cursor_service = cursor_service
        self.global_downloader = global_downloader
        self.feed_downloader = feed_downloader
        self.machine_downloader = machine_downloader
        self._booted = False

    def boot(self) -> None:
        if self._booted:
            return
        missing = [
            name
            for name, value in (
                ("cursor service", self.cursor_service),
                ("global downloader", self.global_downloader),
                ("feed downloader", self.feed_downloader),
                ("machine downloader", self.machine_downloader),
            )
            if value is None
        ]
        if missing:
            raise RuntimeError(f"ruledownload handler is missing: {', '.join(missing)}")
        self._booted = True

    def handles(self, request: ProxyRequest) -> bool:
        return request.resource == _RESOURCE and request.http_method == "POST"

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        machine_id = request.path_parameters.get("machine_id")
        if machine_id is None:
            log.error("ASSERTION FAILED: Received blank {machine_id}")
            return api_response(HTTPStatus.BAD_REQUEST, None)

        try:
            ruledownload_request = RuledownloadRequest.from_dict(json.loads(request.body))
        except ValueError as exc:
            log.info("Failed to unmarshall ruledownload request: %s", exc)
            return api_response(HTTPStatus.BAD_REQUEST, ERR_INVALID_BODY)

        return self._handle_rule_download(machine_id, ruledownload_request)

    def _handle_rule_download(
        self, machine_id: str, ruledownload_request: RuledownloadRequest
    ) -> ProxyResponse:
        try:
            cursor = self.cursor_service.construct_cursor(ruledownload_request, machine_id)
        except Exception as exc:
            log.error("failed to construct ruledownload cursor: %s", exc)
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, ERR_INTERNAL_SERVER_ERROR)

        if cursor.strategy == RuledownloadStrategy.CLEAN:
            return self.global_downloader.handle(machine_id, cursor)
        if cursor.strategy == RuledownloadStrategy.INCREMENTAL:
            return self.feed_downloader.handle(machine_id, cursor)
        if cursor.strategy == RuledownloadStrategy.MACHINE:
            return self.machine_downloader.handle(machine_id, ruledownload_request)

        log.error("unknown ruledownload strategy %r", cursor.strategy)
        return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, ERR_INTERNAL_SERVER_ERROR)