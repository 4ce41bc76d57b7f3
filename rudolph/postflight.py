"""The /postflight endpoint, which closes out a sensor's sync."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Protocol

from rudolph.gateway import Handler, ProxyRequest, ProxyResponse, api_response

log = logging.getLogger(__name__)


class RuleDestroyer(Protocol):
    def destroy_machine_rules_marked_for_deletion(self, machine_id: str) -> None: ...


class SyncStateUpdater(Protocol):
    def update_postflight_date(self, machine_id: str) -> None: ...


class PostPostflightHandler(Handler):
    """Serves POST /postflight/{machine_id}.

    Records when the sync finished, then removes machine rules that were
    marked for deletion.
    """

    def __init__(
        self,
        rule_destroyer: RuleDestroyer | None = None,
        sync_state_updater: SyncStateUpdater | None = None,
    ) -> None:
        self.rule_destroyer = rule_destroyer
        self.sync_state_updater = sync_state_updater
        self._booted = False

    def boot(self) -> None:
        if self._booted:
            return
        if self.rule_destroyer is None or self.sync_state_updater is None:
            raise RuntimeError("postflight handler needs a rule destroyer and a sync state updater")
        self._booted = True

    def handles(self, request: ProxyRequest) -> bool:
        return request.resource == "/postflight/{machine_id}" and request.http_method == "POST"

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        machine_id = request.path_parameters.get("machine_id")
        if machine_id is None:
            log.error("ASSERTION FAILED: Received blank {machine_id}")
            return api_response(HTTPStatus.BAD_REQUEST, None)

        try:
            self.sync_state_updater.update_postflight_date(machine_id)
        except Exception as exc:
            log.error("Failed to set final PostflightAt: %s", exc)
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, exc)

        try:
            self.rule_destroyer.destroy_machine_rules_marked_for_deletion(machine_id)
        except Exception as exc:
            log.error("Failed to delete stale machine rules: %s", exc)
            return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, exc)

        return api_response(HTTPStatus.OK, {"status": "ok"})