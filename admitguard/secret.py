"""Admission of secret creation and deletion, guarding RBAC objects that secrets own."""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from admitguard.common import PolicyRule
from admitguard.models import (
    NAMESPACED_SCOPE,
    SIDE_EFFECT_NONE,
    SIDE_EFFECT_NONE_ON_DRY_RUN,
    GroupVersionResource,
    NotFoundError,
    ObjectMeta,
    Operation,
    Request,
    Response,
    Webhook,
    WebhookClientConfig,
    new_default_webhook,
    response_allowed,
    response_bad_request,
    set_creator_id_annotation,
)

logger = logging.getLogger(__name__)

MUTATOR_ROLE_BINDING_OWNER_INDEX = "webhook.cattle.io/role-binding-index"
ROLE_OWNER_INDEX = "webhook.cattle.io/role-owner-index"
ROLE_BINDING_OWNER_INDEX = "webhook.cattle.io/role-binding-owner-index"
SECRET_KIND = "Secret"
CLOUD_CREDENTIAL_TYPE = "provisioning.cattle.io/cloud-credential"
ORPHAN_PROPAGATION = "Orphan"
MUTATOR_TIMEOUT_SECONDS = 15
SECRETS_GVR = GroupVersionResource("", "v1", "secrets")

_LOG_PREFIX = "validator/corev1/secret"
_ORPHAN_DENIED = (
    "A secret which owns RBAC objects cannot be deleted with OrphanDependents: true "
    "or PropagationPolicy: Orphan"
)


@dataclass
class Role:
    """A namespaced RBAC role."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    rules: list[PolicyRule] = field(default_factory=list)


@dataclass
class RoleBinding:
    """A namespaced RBAC role binding."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    role_ref_kind: str = ""
    role_ref_name: str = ""


def _owner_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _owning_secrets(obj_meta: ObjectMeta) -> list[str]:
    return [
        _owner_key(obj_meta.namespace, owner.name)
        for owner in obj_meta.owner_references
        if owner.api_version == SECRETS_GVR.version and owner.kind == SECRET_KIND
    ]


def role_binding_indexer(role_binding: RoleBinding) -> list[str]:
    """Index a binding to a Role by the secrets that own it."""
    if role_binding.role_ref_kind != "Role":
        return []
    return _owning_secrets(role_binding.metadata)


def secret_owner_indexer(obj_meta: ObjectMeta) -> list[str]:
    """Index an object by the secrets that own it."""
    return _owning_secrets(obj_meta)


def _grants_secret_read(rule: PolicyRule, secret_name: str) -> bool:
    return (
        len(rule.api_groups) == 1
        and rule.api_groups[0] in ("", "*")
        and rule.resources == ["secrets"]
        and rule.resource_names == [secret_name]
        and any(verb in ("get", "*") for verb in rule.verbs)
    )


def amend_rules_to_only_permit_delete(
    rules: Sequence[PolicyRule], secret_name: str
) -> tuple[list[PolicyRule], bool]:
    """Reduce rules granting read access to the named secret to delete only.

    Only rules of the narrow form used for cloud credentials are touched.
    """
    amended = False
    result = []
    for rule in rules:
        if _grants_secret_read(rule, secret_name):
            rule = dataclasses.replace(rule, verbs=["delete"])
            amended = True
        result.append(rule)
    return result, amended


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def _is_list(value: Any) -> bool:
    return isinstance(value, list)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


_SECRET_FIELDS: dict[str, Callable[[Any], bool]] = {
    "kind": _is_str,
    "apiversion": _is_str,
    "metadata": _is_object,
    "immutable": _is_bool,
    "data": _is_object,
    "stringdata": _is_object,
    "type": _is_str,
}

_METADATA_FIELDS: dict[str, Callable[[Any], bool]] = {
    "name": _is_str,
    "namespace": _is_str,
    "annotations": _is_object,
    "labels": _is_object,
    "ownerreferences": _is_list,
}

_DELETE_OPTION_FIELDS: dict[str, Callable[[Any], bool]] = {
    "kind": _is_str,
    "apiversion": _is_str,
    "graceperiodseconds": _is_int,
    "preconditions": _is_object,
    "orphandependents": _is_bool,
    "propagationpolicy": _is_str,
    "dryrun": _is_str_list,
}


def _check_fields(
    obj: Mapping[str, Any], fields: Mapping[str, Callable[[Any], bool]], what: str
) -> dict[str, Any]:
    """Match keys case-insensitively against known fields and check their types."""
    values: dict[str, Any] = {}
    for key, value in obj.items():
        name = key.lower()
        check = fields.get(name)
        if check is None:
            continue
        if value is not None and not check(value):
            raise ValueError(
                f"cannot unmarshal {type(value).__name__} into field {key} of type {what}"
            )
        values[name] = value
    return values


@dataclass
class _Secret:
    name: str
    namespace: str
    type: str
    document: dict[str, Any]


def _secret_from_request(request: Request) -> _Secret:
    document = request.decoded_object()
    fields = _check_fields(document, _SECRET_FIELDS, "Secret")
    meta = _check_fields(fields.get("metadata") or {}, _METADATA_FIELDS, "ObjectMeta")
    return _Secret(
        name=meta.get("name") or "",
        namespace=meta.get("namespace") or "",
        type=fields.get("type") or "",
        document=document,
    )


def _decode_delete_options(raw: bytes | str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as err:
        raise ValueError(f"unable to unmarshal delete options {err}") from err
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("unable to unmarshal delete options: expected a JSON object")
    try:
        return _check_fields(value, _DELETE_OPTION_FIELDS, "DeleteOptions")
    except ValueError as err:
        raise ValueError(f"unable to unmarshal delete options {err}") from err


class SecretMutator:
    """Stamps cloud credentials with their creator and defangs RBAC on secret deletion."""

    def __init__(self, role_controller: Any, role_binding_controller: Any) -> None:
        role_binding_controller.cache.add_indexer(
            MUTATOR_ROLE_BINDING_OWNER_INDEX, role_binding_indexer
        )
        self.role_controller = role_controller
        self.role_binding_controller = role_binding_controller

    def gvr(self) -> GroupVersionResource:
        return SECRETS_GVR

    def operations(self) -> list[Operation]:
        return [Operation.CREATE, Operation.DELETE]

    def mutating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        webhook = new_default_webhook(self, client_config, NAMESPACED_SCOPE, self.operations())
        webhook.side_effects = SIDE_EFFECT_NONE_ON_DRY_RUN
        webhook.timeout_seconds = MUTATOR_TIMEOUT_SECONDS
        return [webhook]

    def admit(self, request: Request) -> Response:
        if request.dry_run:
            return response_allowed()
        secret = _secret_from_request(request)
        if request.operation is Operation.CREATE:
            return self._admit_create(secret, request)
        if request.operation is Operation.DELETE:
            return self._admit_delete(secret)
        raise ValueError(f'operation type "{Operation(request.operation).value}" not handled')

    def _admit_create(self, secret: _Secret, request: Request) -> Response:
        if secret.type != CLOUD_CREDENTIAL_TYPE:
            return response_allowed()
        logger.debug(
            "[secret-mutation] adding creatorID %s to secret: %s",
            request.user_info.username,
            secret.name,
        )
        new_secret = copy.deepcopy(secret.document)
        if new_secret.get("metadata") is None:
            new_secret["metadata"] = {}
        response = Response()
        set_creator_id_annotation(request, response, request.object_raw, new_secret)
        response.allowed = True
        return response

    def _admit_delete(self, secret: _Secret) -> Response:
        """Limit roles owned by the secret that grant access to it to delete only."""
        key = _owner_key(secret.namespace, secret.name)
        try:
            bindings = self.role_binding_controller.cache.get_by_index(
                MUTATOR_ROLE_BINDING_OWNER_INDEX, key
            )
        except Exception as err:
            raise RuntimeError(
                f"unable to determine if secret {key} has rbac references: {err}"
            ) from err

        for binding in bindings or []:
            namespace = binding.metadata.namespace
            described = (
                f"role {namespace}/{binding.role_ref_name} granted by binding "
                f"{namespace}/{binding.metadata.name} owned by the secret"
            )
            try:
                role = self.role_controller.cache.get(namespace, binding.role_ref_name)
            except NotFoundError:
                continue
            except Exception as err:
                raise RuntimeError(f"unable to evaluate {described}: {err}") from err

            rules, amended = amend_rules_to_only_permit_delete(role.rules, secret.name)
            if not amended:
                continue
            role.rules = rules
            try:
                self.role_controller.update(role)
            except NotFoundError:
                pass
            except Exception as err:
                raise RuntimeError(f"unable to revoke permissions on {described}: {err}") from err
        return response_allowed()


class SecretOrphanAdmitter:
    """Refuses deletes that would orphan RBAC objects owned by a secret."""

    def __init__(self, role_cache: Any, role_binding_cache: Any) -> None:
        self.role_cache = role_cache
        self.role_binding_cache = role_binding_cache

    def admit(self, request: Request) -> Response:
        options = _decode_delete_options(request.options_raw)
        orphan_dependents = options.get("orphandependents") is True
        orphan_policy = options.get("propagationpolicy") == ORPHAN_PROPAGATION
        if not orphan_dependents and not orphan_policy:
            return response_allowed()

        try:
            secret = _secret_from_request(request)
        except ValueError as err:
            raise ValueError(f"unable to read secret from request: {err}") from err

        roles, bindings = self._rbac_refs(secret)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[%s] secret %s owns roles: %s and roleBindings %s",
                _LOG_PREFIX,
                secret.name,
                [role.metadata.name for role in roles],
                [binding.metadata.name for binding in bindings],
            )
        if not roles and not bindings:
            return response_allowed()
        return response_bad_request(_ORPHAN_DENIED)

    def _rbac_refs(self, secret: _Secret) -> tuple[list[Role], list[RoleBinding]]:
        key = _owner_key(secret.namespace, secret.name)
        try:
            roles = self.role_cache.get_by_index(ROLE_OWNER_INDEX, key)
            bindings = self.role_binding_cache.get_by_index(ROLE_BINDING_OWNER_INDEX, key)
        except Exception as err:
            raise RuntimeError(f"unable to determine if secret has rbac refs: {err}") from err
        return list(roles or []), list(bindings or [])


class SecretValidator:
    """Validates secret deletion so that owned RBAC objects are not orphaned."""

    def __init__(self, role_cache: Any, role_binding_cache: Any) -> None:
        role_cache.add_indexer(ROLE_OWNER_INDEX, lambda role: secret_owner_indexer(role.metadata))
        role_binding_cache.add_indexer(
            ROLE_BINDING_OWNER_INDEX, lambda binding: secret_owner_indexer(binding.metadata)
        )
        self.admitter = SecretOrphanAdmitter(role_cache, role_binding_cache)

    def gvr(self) -> GroupVersionResource:
        return SECRETS_GVR

    def operations(self) -> list[Operation]:
        return [Operation.DELETE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        webhook = new_default_webhook(self, client_config, NAMESPACED_SCOPE, self.operations())
        webhook.side_effects = SIDE_EFFECT_NONE
        return [webhook]

    def admitters(self) -> list[SecretOrphanAdmitter]:
        return [self.admitter]