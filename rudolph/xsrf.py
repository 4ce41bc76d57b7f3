"""The /xsrf endpoint, which simply acknowledges the sensor."""

from __future__ import annotations

import logging
from http import HTTPStatus

from rudolph.gateway import Handler, ProxyRequest, ProxyResponse, api_response

log = logging.getLogger(__name__)


class PostXSRFHandler(Handler):
    """Answers POST /xsrf/{machine_id} with a plain acknowledgement."""

    def boot(self) -> None:
        return None

    def handles(self, request: ProxyRequest) -> bool:
        return request.resource == "/xsrf/{machine_id}" and request.http_method == "POST"

    def handle(self, request: ProxyRequest) -> ProxyResponse:
        log.info("XSRFHandler request: %r", request)
        return api_response(HTTPStatus.OK, {"status": "ok"})