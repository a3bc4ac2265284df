"""Admission of cluster role template bindings."""

from __future__ import annotations

import http
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from admitguard.common import PolicyRule
from admitguard.models import (
    NAMESPACED_SCOPE,
    GroupVersionResource,
    NotFoundError,
    Operation,
    Request,
    Response,
    Status,
    Webhook,
    WebhookClientConfig,
    new_default_webhook,
    response_bad_request,
)

CRTB_GVR = GroupVersionResource("management.cattle.io", "v3", "clusterroletemplatebindings")
CRTB_FIELD_PATH = "clusterroletemplatebinding"
CLUSTER_CONTEXT = "cluster"
REASON_FORBIDDEN = "Forbidden"

_IMMUTABLE = "field is immutable"
_REQUIRED = "field is required"


def _quote(value: Any) -> str:
    return json.dumps(value) if isinstance(value, str) else str(value)


def _child(path: str, *names: str) -> str:
    return ".".join((path, *names))


class FieldError(ValueError):
    """A validation error tied to one field of an object."""

    def __init__(self, kind: str, path: str, detail: str = "", value: Any = None) -> None:
        self.kind = kind
        self.path = path
        self.detail = detail
        self.value = value
        super().__init__(f"{path}: {self.body}")

    @property
    def body(self) -> str:
        text = self.kind
        if self.kind in ("Invalid value", "Unsupported value"):
            text = f"{text}: {_quote(self.value)}"
        if self.detail:
            text = f"{text}: {self.detail}"
        return text

    @classmethod
    def invalid(cls, path: str, value: Any, detail: str) -> FieldError:
        return cls("Invalid value", path, detail, value)

    @classmethod
    def forbidden(cls, path: str, detail: str) -> FieldError:
        return cls("Forbidden", path, detail)

    @classmethod
    def required(cls, path: str, detail: str) -> FieldError:
        return cls("Required value", path, detail)

    @classmethod
    def not_supported(cls, path: str, value: Any, valid: Sequence[str]) -> FieldError:
        detail = "supported values: " + ", ".join(_quote(item) for item in valid)
        return cls("Unsupported value", path, detail, value)


@dataclass
class RoleTemplate:
    """A template of RBAC rules that bindings refer to by name."""

    name: str
    display_name: str = ""
    context: str = ""
    locked: bool = False
    builtin: bool = False
    administrative: bool = False
    rules: list[PolicyRule] = field(default_factory=list)


_CRTB_FIELDS = {
    "user_name": "userName",
    "user_principal_name": "userPrincipalName",
    "group_name": "groupName",
    "group_principal_name": "groupPrincipalName",
    "cluster_name": "clusterName",
    "role_template_name": "roleTemplateName",
}


def _string(document: Mapping[str, Any], key: str) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key} must be a string, not {type(value).__name__}")
    return value


@dataclass
class ClusterRoleTemplateBinding:
    """Binds a user or group to a role template within a cluster."""

    name: str = ""
    namespace: str = ""
    user_name: str = ""
    user_principal_name: str = ""
    group_name: str = ""
    group_principal_name: str = ""
    cluster_name: str = ""
    role_template_name: str = ""

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> ClusterRoleTemplateBinding:
        metadata = document.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError("field metadata must be an object")
        values = {attr: _string(document, key) for attr, key in _CRTB_FIELDS.items()}
        return cls(
            name=_string(metadata, "name"),
            namespace=_string(metadata, "namespace"),
            **values,
        )

    def to_dict(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "kind": "ClusterRoleTemplateBinding",
            "apiVersion": "management.cattle.io/v3",
            "metadata": {"name": self.name, "namespace": self.namespace},
        }
        for attr, key in _CRTB_FIELDS.items():
            value = getattr(self, attr)
            if value:
                document[key] = value
        return document


def validate_update_fields(
    old: ClusterRoleTemplateBinding, new: ClusterRoleTemplateBinding, field_path: str
) -> None:
    """Raise FieldError if the update changes a field that may not change."""
    if old.role_template_name != new.role_template_name:
        raise FieldError.invalid(_child(field_path, "roleTemplateName"), new.role_template_name, _IMMUTABLE)
    if old.cluster_name != new.cluster_name:
        raise FieldError.invalid(_child(field_path, "clusterName"), new.cluster_name, _IMMUTABLE)
    for attr, key in (
        ("user_name", "userName"),
        ("user_principal_name", "userPrincipalName"),
        ("group_name", "groupName"),
        ("group_principal_name", "groupPrincipalName"),
    ):
        old_value = getattr(old, attr)
        new_value = getattr(new, attr)
        if old_value and old_value != new_value:
            raise FieldError.invalid(_child(field_path, key), new_value, _IMMUTABLE)
    targets_group = bool(new.group_name or old.group_principal_name)
    targets_user = bool(new.user_name or old.user_principal_name)
    if targets_group and targets_user:
        raise FieldError.forbidden(
            field_path,
            "binding target must target either a user [userName]/[userPrincipalName] "
            "OR a group [groupName]/[groupPrincipalName]",
        )


def _template_rules(role_template: RoleTemplate) -> list[PolicyRule]:
    return list(role_template.rules)


EscalationCheck = Callable[[Request, Sequence[PolicyRule], str], None]


@dataclass
class CRTBAdmitter:
    """Checks binding fields and that the requester cannot escalate privileges.

    ``escalation_check`` raises PermissionError when the requesting user may
    not grant the given rules in the given cluster.
    """

    role_templates: Any
    escalation_check: EscalationCheck
    rules_from_template: Callable[[RoleTemplate], list[PolicyRule]] = _template_rules

    def admit(self, request: Request) -> Response:
        if request.operation is Operation.UPDATE:
            try:
                old_doc, new_doc = request.decoded_old_and_new()
                old = ClusterRoleTemplateBinding.from_dict(old_doc)
                new = ClusterRoleTemplateBinding.from_dict(new_doc)
            except ValueError as err:
                raise ValueError(f"failed to decode old and new CRTB from request: {err}") from err
            try:
                validate_update_fields(old, new, CRTB_FIELD_PATH)
            except FieldError as err:
                return response_bad_request(str(err))

        try:
            crtb = ClusterRoleTemplateBinding.from_dict(request.decoded_object())
        except ValueError as err:
            raise ValueError(f"failed to decode CRTB from request: {err}") from err

        if request.operation is Operation.CREATE:
            try:
                self.validate_create_fields(crtb, CRTB_FIELD_PATH)
            except FieldError as err:
                return response_bad_request(str(err))
            except Exception as err:
                raise RuntimeError(f"failed to validate fields on create: {err}") from err

        name = crtb.role_template_name
        try:
            role_template = self.role_templates.get(name)
        except NotFoundError:
            return Response(allowed=True)
        except Exception as err:
            raise RuntimeError(f"failed to get roletemplate '{name}': {err}") from err

        try:
            rules = self.rules_from_template(role_template)
        except Exception as err:
            raise RuntimeError(f"failed to resolve rules from roletemplate '{name}': {err}") from err

        try:
            self.escalation_check(request, rules, crtb.cluster_name)
        except PermissionError as err:
            return Response(
                allowed=False,
                result=Status(
                    status="Failure",
                    message=str(err),
                    reason=REASON_FORBIDDEN,
                    code=http.HTTPStatus.FORBIDDEN.value,
                ),
            )
        return Response(allowed=True)

    def validate_create_fields(self, crtb: ClusterRoleTemplateBinding, field_path: str) -> None:
        """Raise FieldError if a required field is missing or invalid."""
        has_user = bool(crtb.user_name or crtb.user_principal_name)
        has_group = bool(crtb.group_name or crtb.group_principal_name)
        if has_user == has_group:
            raise FieldError.forbidden(
                field_path,
                "binding must target either a user [userId]/[userPrincipalId] "
                "OR a group [groupId]/[groupPrincipalId]",
            )
        if not crtb.cluster_name:
            raise FieldError.required(_child(field_path, "clusterName"), _REQUIRED)
        if not crtb.role_template_name:
            raise FieldError.required(_child(field_path, "roleTemplateName"), _REQUIRED)

        try:
            role_template = self.role_templates.get(crtb.role_template_name)
        except NotFoundError:
            raise FieldError.invalid(
                _child(field_path, "roleTemplateName"),
                crtb.role_template_name,
                "the referenced role template was not found",
            ) from None

        if role_template.locked:
            raise FieldError.forbidden(
                _child(field_path, "roleTemplate"),
                f"referenced role {role_template.display_name} is locked and cannot be assigned",
            )
        if role_template.context != CLUSTER_CONTEXT:
            raise FieldError.not_supported(
                _child(field_path, "roleTemplate", "context"),
                role_template.context,
                [CLUSTER_CONTEXT],
            )


class CRTBValidator:
    """Validates cluster role template binding create and update requests."""

    def __init__(
        self,
        role_templates: Any,
        escalation_check: EscalationCheck,
        rules_from_template: Callable[[RoleTemplate], list[PolicyRule]] = _template_rules,
    ) -> None:
        self.admitter = CRTBAdmitter(role_templates, escalation_check, rules_from_template)

    def gvr(self) -> GroupVersionResource:
        return CRTB_GVR

    def operations(self) -> list[Operation]:
        return [Operation.UPDATE, Operation.CREATE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        return [new_default_webhook(self, client_config, NAMESPACED_SCOPE, self.operations())]

    def admitters(self) -> list[CRTBAdmitter]:
        return [self.admitter]