"""Custom authorizer deciding which sensor requests may reach the API."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from rudolph.gateway import ProxyRequest

log = logging.getLogger(__name__)

_POLICY_VERSION = "2012-10-17"
_INVOKE_ACTION = "execute-api:Invoke"
_ANY_RESOURCE = "arn:aws:execute-api:*:*:*/*/*/*"
_UNKNOWN_SENSOR = "UNKNOWN_SENSOR"


@dataclass(frozen=True)
class AuthorizerEnvironment:
    """Deployment details used to build the allowed resource ARN."""

    region: str = ""
    gateway_id: str = ""
    account_id: str = ""

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> AuthorizerEnvironment:
        env = os.environ if environ is None else environ
        return cls(
            region=env.get("REGION", ""),
            gateway_id=env.get("GATEWAY_ID", ""),
            account_id=env.get("ACCOUNT_ID", ""),
        )


@dataclass
class AuthorizerResponse:
    """An allow or deny policy for API Gateway."""

    principal_id: str
    effect: str
    resources: list[str]
    usage_identifier_key: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "principalId": self.principal_id,
            "policyDocument": {
                "Version": _POLICY_VERSION,
                "Statement": [
                    {
                        "Action": [_INVOKE_ACTION],
                        "Effect": self.effect,
                        "Resource": list(self.resources),
                    }
                ],
            },
            "context": dict(self.context),
            "usageIdentifierKey": self.usage_identifier_key,
        }


def deny_response(reason: str) -> AuthorizerResponse:
    """A policy denying every resource, carrying the reason in its context."""
    return AuthorizerResponse(
        principal_id=_UNKNOWN_SENSOR,
        effect="Deny",
        resources=[_ANY_RESOURCE],
        usage_identifier_key=_UNKNOWN_SENSOR,
        context={"DenyReason": reason},
    )


def allow_response(machine_id: str, env: AuthorizerEnvironment) -> AuthorizerResponse:
    """A policy allowing every route of the deployed gateway."""
    resource_arn = (
        f"arn:aws:execute-api:{env.region}:{env.account_id}:{env.gateway_id}/*/*/*/*"
    )
    return AuthorizerResponse(
        principal_id="ValidSantaEndpoint",
        effect="Allow",
        resources=[resource_arn],
        usage_identifier_key=machine_id,
        context={"MachineID": machine_id},
    )


def handle_authorizer_request(
    request: ProxyRequest, env: AuthorizerEnvironment | None = None
) -> AuthorizerResponse:
    """Decide whether the request may proceed."""
    log.info("lambda request - HandleAuthorizerRequest: %r", request)
    if env is None:
        env = AuthorizerEnvironment.from_environ()

    if request.http_method == "GET" and request.path == "/health":
        return allow_response("HEALTH_CHECK", env)

    if request.http_method != "POST":
        return deny_response("Incorrect Method")

    machine_id = request.path_parameters.get("machine_id")
    if machine_id is None:
        return deny_response("Incorrect Request URI")

    return allow_response(machine_id, env)