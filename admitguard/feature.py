"""Admission of updates to feature flags."""

from __future__ import annotations

import http
from typing import Any, Mapping

from admitguard.models import (
    CLUSTER_SCOPE,
    IGNORE,
    REASON_INVALID,
    GroupVersionResource,
    Operation,
    Request,
    Response,
    Status,
    Webhook,
    WebhookClientConfig,
    new_default_webhook,
)

FEATURES_GVR = GroupVersionResource("management.cattle.io", "v3", "features")


def _spec_value(feature: Mapping[str, Any]) -> Any:
    return (feature.get("spec") or {}).get("value")


def _locked_value(feature: Mapping[str, Any]) -> Any:
    return (feature.get("status") or {}).get("lockedValue")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_update_allowed(old: Mapping[str, Any] | None, new: Mapping[str, Any] | None) -> bool:
    """Whether the spec value may change, given the locked value on the new feature."""
    if old is None or new is None:
        return False
    locked = _locked_value(new)
    if locked is None:
        return True
    old_value = _spec_value(old)
    new_value = _spec_value(new)
    if old_value is None and new_value is None:
        return True
    if old_value is not None and new_value is not None and old_value == new_value:
        return True
    return new_value is not None and new_value == locked


class FeatureAdmitter:
    """Refuses changes to a feature whose value is locked."""

    def admit(self, request: Request) -> Response:
        old, new = request.decoded_old_and_new()
        if not is_update_allowed(old, new):
            message = (
                "feature flag cannot be changed from current value: "
                f"{_format_value(_locked_value(new))}"
            )
            return Response(
                allowed=False,
                result=Status(
                    status="Failure",
                    message=message,
                    reason=REASON_INVALID,
                    code=http.HTTPStatus.BAD_REQUEST.value,
                ),
            )
        return Response(allowed=True)


class FeatureValidator:
    """Validates updates to features."""

    def __init__(self) -> None:
        self.admitter = FeatureAdmitter()

    def gvr(self) -> GroupVersionResource:
        return FEATURES_GVR

    def operations(self) -> list[Operation]:
        return [Operation.UPDATE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        webhook = new_default_webhook(self, client_config, CLUSTER_SCOPE, self.operations())
        webhook.failure_policy = IGNORE
        return [webhook]

    def admitters(self) -> list[FeatureAdmitter]:
        return [self.admitter]