"""Checks shared between resource admitters."""

from __future__ import annotations

import http
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from admitguard.models import CREATOR_ID_ANNOTATION, REASON_INVALID, Operation, Request, Status

ENFORCE_LABEL = "pod-security.kubernetes.io/enforce"
ENFORCE_VERSION_LABEL = "pod-security.kubernetes.io/enforce-version"
AUDIT_LABEL = "pod-security.kubernetes.io/audit"
AUDIT_VERSION_LABEL = "pod-security.kubernetes.io/audit-version"
WARN_LABEL = "pod-security.kubernetes.io/warn"
WARN_VERSION_LABEL = "pod-security.kubernetes.io/warn-version"

PSA_LABELS = (
    ENFORCE_LABEL,
    ENFORCE_VERSION_LABEL,
    AUDIT_LABEL,
    AUDIT_VERSION_LABEL,
    WARN_LABEL,
    WARN_VERSION_LABEL,
)


def _go_list(values: list[str]) -> str:
    return "[" + " ".join(values) + "]"


@dataclass
class PolicyRule:
    """An RBAC policy rule."""

    verbs: list[str] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(default_factory=list)
    non_resource_urls: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"&PolicyRule{{Verbs:{_go_list(self.verbs)},"
            f"APIGroups:{_go_list(self.api_groups)},"
            f"Resources:{_go_list(self.resources)},"
            f"ResourceNames:{_go_list(self.resource_names)},"
            f"NonResourceURLs:{_go_list(self.non_resource_urls)},}}"
        )


def is_updating_psa_config(old: Mapping[str, str] | None, new: Mapping[str, str] | None) -> bool:
    """Whether the labels change any pod security admission setting."""
    old = old or {}
    new = new or {}
    return any(old.get(label, "") != new.get(label, "") for label in PSA_LABELS)


def is_creating_psa_config(new: Mapping[str, str] | None) -> bool:
    """Whether the labels hold any pod security admission setting."""
    return any(label in PSA_LABELS for label in (new or {}))


def _annotations(obj: Mapping[str, Any] | None) -> Mapping[str, str]:
    metadata = (obj or {}).get("metadata") or {}
    return metadata.get("annotations") or {}


def check_creator_id(
    request: Request, old_obj: Mapping[str, Any] | None, new_obj: Mapping[str, Any]
) -> Status | None:
    """Return a failure status if the creator annotation is not acceptable."""
    status = Status(
        status="Failure",
        reason=REASON_INVALID,
        code=http.HTTPStatus.UNPROCESSABLE_ENTITY.value,
    )
    new_annotations = _annotations(new_obj)
    if request.operation is Operation.CREATE:
        if new_annotations.get(CREATOR_ID_ANNOTATION, "") != request.user_info.username:
            status.message = "creatorID annotation does not match user"
            return status
        return None

    if CREATOR_ID_ANNOTATION not in new_annotations:
        return None

    if _annotations(old_obj).get(CREATOR_ID_ANNOTATION, "") != new_annotations[CREATOR_ID_ANNOTATION]:
        status.message = "creatorID annotation cannot be changed"
        return status
    return None


def check_for_verbs(rules: Iterable[PolicyRule]) -> None:
    """Raise ValueError if any rule has no verb."""
    for rule in rules:
        if not rule.verbs:
            raise ValueError(f"policyRules must have at least one verb: {rule}")