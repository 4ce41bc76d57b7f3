"""API Gateway proxy requests and responses, and routing between handlers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

log = logging.getLogger(__name__)

ERR_INVALID_MEDIA_TYPE = {"error": "Invalid mediatype"}
ERR_INVALID_BODY = {"error": "Invalid request body"}
ERR_INTERNAL_SERVER_ERROR = {"error": "Internal server error"}
ERR_INVALID_PATH_PARAMETER = {"error": "Invalid path parameter"}
ERR_NO_PATH_PARAMETER = {"error": "No path parameter"}


@dataclass
class ProxyRequest:
    """An HTTP request as delivered by an API Gateway proxy integration."""

    http_method: str = ""
    resource: str = ""
    path: str = ""
    path_parameters: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass
class ProxyResponse:
    """An HTTP response returned through an API Gateway proxy integration."""

    status_code: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseException):
        return {}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def api_response(status: int, body: Any) -> ProxyResponse:
    """Build a JSON response.

    ``body`` is encoded as compact JSON; objects with ``to_dict`` are encoded
    through it, exceptions encode as an empty object, and ``None`` gives an
    empty body.
    """
    text = "" if body is None else json.dumps(body, separators=(",", ":"), default=_json_default)
    return ProxyResponse(
        status_code=int(status),
        body=text,
        headers={"Content-Type": "application/json"},
    )


class Handler(ABC):
    """One API endpoint."""

    @abstractmethod
    def handles(self, request: ProxyRequest) -> bool:
        """Whether this handler serves the request."""

    @abstractmethod
    def boot(self) -> None:
        """Prepare the handler before its first request; raises on failure."""

    @abstractmethod
    def handle(self, request: ProxyRequest) -> ProxyResponse:
        """Serve the request."""


class Router:
    """Dispatches each request to the first handler that accepts it."""

    def __init__(self, handlers: Iterable[Handler]) -> None:
        self.handlers = tuple(handlers)

    def route(self, request: ProxyRequest) -> ProxyResponse:
        log.info("Api Request: %r", request)
        try:
            response = self._dispatch(request)
        except Exception:
            log.exception("Api ERROR")
            raise
        log.info("Api Response: %r", response)
        return response

    def _dispatch(self, request: ProxyRequest) -> ProxyResponse:
        for handler in self.handlers:
            if not handler.handles(request):
                continue
            try:
                handler.boot()
            except Exception:
                log.exception("handler failed to boot")
                return api_response(HTTPStatus.INTERNAL_SERVER_ERROR, None)
            return handler.handle(request)

        log.error(
            "ApiRouter failure: unrouteable request: [%s] %s",
            request.http_method,
            request.resource,
        )
        return api_response(HTTPStatus.METHOD_NOT_ALLOWED, None)