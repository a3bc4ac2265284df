"""Admission of requests that create or change namespaces."""

from __future__ import annotations

import http
from dataclasses import dataclass
from typing import Any, Mapping

from admitguard.common import is_creating_psa_config, is_updating_psa_config
from admitguard.models import (
    CLUSTER_SCOPE,
    IGNORE,
    REASON_UNAUTHORIZED,
    SELECTOR_IN,
    SELECTOR_NOT_IN,
    GroupVersionResource,
    LabelSelectorRequirement,
    Operation,
    Request,
    ResourceAttributes,
    Response,
    Status,
    SubjectAccessReview,
    Webhook,
    WebhookClientConfig,
    convert_authn_extras,
    create_webhook_name,
    new_default_webhook,
)

PROJECTS_GVR = GroupVersionResource("management.cattle.io", "v3", "projects")
MANAGE_NS_VERB = "manage-namespaces"
UPDATE_PSA_VERB = "updatepsa"
PROJECT_NS_ANNOTATION = "field.cattle.io/projectId"
LABEL_METADATA_NAME = "kubernetes.io/metadata.name"
KUBE_SYSTEM = "kube-system"


def _metadata_map(obj: Mapping[str, Any], key: str) -> Mapping[str, str]:
    metadata = obj.get("metadata") or {}
    return metadata.get(key) or {}


def _review(request: Request, verb: str, name: str = "") -> SubjectAccessReview:
    user = request.user_info
    return SubjectAccessReview(
        resource_attributes=ResourceAttributes(
            verb=verb,
            group=PROJECTS_GVR.group,
            version=PROJECTS_GVR.version,
            resource=PROJECTS_GVR.resource,
            name=name,
        ),
        user=user.username,
        groups=list(user.groups),
        uid=user.uid,
        extra=convert_authn_extras(user.extra),
    )


def _forbidden(reason: str) -> Status:
    return Status(
        status="Failure",
        message=reason,
        reason=REASON_UNAUTHORIZED,
        code=http.HTTPStatus.FORBIDDEN.value,
    )


@dataclass
class PSALabelAdmitter:
    """Requires permission to add, change or remove pod security labels."""

    sar: Any

    def admit(self, request: Request) -> Response:
        try:
            if request.operation is Operation.CREATE:
                labels = _metadata_map(request.decoded_object(), "labels")
                if not is_creating_psa_config(labels):
                    return Response(allowed=True)
            elif request.operation is Operation.UPDATE:
                old, new = request.decoded_old_and_new()
                if not is_updating_psa_config(_metadata_map(old, "labels"), _metadata_map(new, "labels")):
                    return Response(allowed=True)
        except ValueError as err:
            raise ValueError(f"failed to decode namespace from request: {err}") from err

        try:
            result = self.sar.create(_review(request, UPDATE_PSA_VERB))
        except Exception as err:
            raise RuntimeError(f"SAR request creation failed: {err}") from err

        if result.allowed:
            return Response(allowed=True)
        return Response(allowed=False, result=_forbidden(result.reason))


@dataclass
class ProjectNamespaceAdmitter:
    """Requires permission on a project before a namespace joins it."""

    sar: Any

    def admit(self, request: Request) -> Response:
        try:
            old, new = request.decoded_old_and_new()
        except ValueError as err:
            raise ValueError(f"failed to decode namespace from request: {err}") from err

        new_annotations = _metadata_map(new, "annotations")
        if PROJECT_NS_ANNOTATION not in new_annotations:
            return Response(allowed=True)
        project_value = new_annotations[PROJECT_NS_ANNOTATION]

        if request.operation is Operation.UPDATE:
            old_annotations = _metadata_map(old, "annotations")
            if old_annotations.get(PROJECT_NS_ANNOTATION) == project_value:
                return Response(allowed=True)

        values = project_value.split(":")
        if len(values) < 2:
            raise ValueError("unable to retrieve project id from annotation, too few values")

        result = self.sar.create(_review(request, MANAGE_NS_VERB, values[1]))
        if result.allowed:
            return Response(allowed=True)
        return Response(allowed=False, result=_forbidden(result.reason))


class NamespaceValidator:
    """Validates namespace create and update requests."""

    def __init__(self, sar: Any) -> None:
        self.psa_admitter = PSALabelAdmitter(sar)
        self.project_namespace_admitter = ProjectNamespaceAdmitter(sar)

    def gvr(self) -> GroupVersionResource:
        return GroupVersionResource("", "v1", "namespaces")

    def operations(self) -> list[Operation]:
        return [Operation.UPDATE, Operation.CREATE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        # Namespaces are cluster scoped.
        standard = new_default_webhook(self, client_config, CLUSTER_SCOPE, [Operation.UPDATE])

        create = new_default_webhook(self, client_config, CLUSTER_SCOPE, [Operation.CREATE])
        create.name = create_webhook_name(self, "create-non-kubesystem")
        create.namespace_selector = [
            LabelSelectorRequirement(LABEL_METADATA_NAME, SELECTOR_NOT_IN, [KUBE_SYSTEM])
        ]

        # Lets kube-system namespaces be created while the webhook is down.
        kube_system = new_default_webhook(self, client_config, CLUSTER_SCOPE, [Operation.CREATE])
        kube_system.name = create_webhook_name(self, "create-kubesystem-only")
        kube_system.namespace_selector = [
            LabelSelectorRequirement(LABEL_METADATA_NAME, SELECTOR_IN, [KUBE_SYSTEM])
        ]
        kube_system.failure_policy = IGNORE

        return [standard, create, kube_system]

    def admitters(self) -> list[PSALabelAdmitter | ProjectNamespaceAdmitter]:
        return [self.psa_admitter, self.project_namespace_admitter]