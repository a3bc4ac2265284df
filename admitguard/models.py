"""Admission request, response and webhook configuration types."""

from __future__ import annotations

import dataclasses
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Sequence

CREATOR_ID_ANNOTATION = "field.cattle.io/creatorId"

REASON_INVALID = "Invalid"
REASON_UNAUTHORIZED = "Unauthorized"
REASON_BAD_REQUEST = "BadRequest"

CLUSTER_SCOPE = "Cluster"
NAMESPACED_SCOPE = "Namespaced"

FAIL = "Fail"
IGNORE = "Ignore"

SIDE_EFFECT_NONE = "None"
SIDE_EFFECT_NONE_ON_DRY_RUN = "NoneOnDryRun"

SELECTOR_IN = "In"
SELECTOR_NOT_IN = "NotIn"

JSON_PATCH = "JSONPatch"
WEBHOOK_PREFIX = "rancher.cattle.io"
DEFAULT_TIMEOUT_SECONDS = 10


class Operation(str, enum.Enum):
    """Operation carried by an admission request."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class NotFoundError(LookupError):
    """Raised by caches and clients when an object does not exist."""


@dataclass
class UserInfo:
    """The user that sent a request."""

    username: str = ""
    uid: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Status:
    """Result details attached to a response."""

    status: str = ""
    message: str = ""
    reason: str = ""
    code: int = 0


def _decode(raw: bytes | str, what: str) -> dict[str, Any]:
    if not raw:
        raise ValueError(f"failed to unmarshal {what}: empty input")
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise ValueError(f"failed to unmarshal {what}: {err}") from err
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"failed to unmarshal {what}: expected a JSON object")
    return value


@dataclass
class Request:
    """An admission request, with objects held as raw JSON."""

    operation: Operation
    user_info: UserInfo = field(default_factory=UserInfo)
    object_raw: bytes = b""
    old_object_raw: bytes = b""
    options_raw: bytes = b""
    name: str = ""
    namespace: str = ""
    uid: str = ""
    dry_run: bool = False

    def decoded_object(self) -> dict[str, Any]:
        """The object the request acts on; the old object for deletes."""
        if self.operation is Operation.DELETE:
            return _decode(self.old_object_raw, "request old object")
        return _decode(self.object_raw, "request object")

    def decoded_old_and_new(self) -> tuple[dict[str, Any], dict[str, Any]]:
        """The old and new objects; the old one is empty on create."""
        new: dict[str, Any] = {}
        if self.operation is not Operation.DELETE:
            new = _decode(self.object_raw, "request object")
        if self.operation is Operation.CREATE:
            return {}, new
        return _decode(self.old_object_raw, "request old object"), new


@dataclass
class Response:
    """An admission response."""

    allowed: bool = False
    result: Status | None = None
    patch: bytes | None = None
    patch_type: str | None = None


@dataclass(frozen=True)
class GroupVersionResource:
    group: str
    version: str
    resource: str


@dataclass
class ResourceAttributes:
    verb: str = ""
    group: str = ""
    version: str = ""
    resource: str = ""
    name: str = ""
    namespace: str = ""


@dataclass
class SubjectAccessReview:
    """A question to the authorizer and, once answered, its verdict."""

    resource_attributes: ResourceAttributes | None = None
    user: str = ""
    groups: list[str] = field(default_factory=list)
    uid: str = ""
    extra: dict[str, list[str]] = field(default_factory=dict)
    allowed: bool = False
    reason: str = ""


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass
class WebhookClientConfig:
    """Where the API server sends admission requests."""

    url: str | None = None
    service_name: str | None = None
    service_namespace: str | None = None
    service_path: str | None = None
    ca_bundle: bytes = b""


@dataclass
class LabelSelectorRequirement:
    key: str
    operator: str
    values: list[str] = field(default_factory=list)


@dataclass
class Webhook:
    """A webhook registration with a single rule."""

    name: str
    client_config: WebhookClientConfig
    operations: list[Operation]
    scope: str
    api_groups: list[str]
    api_versions: list[str]
    resources: list[str]
    failure_policy: str = FAIL
    side_effects: str = SIDE_EFFECT_NONE
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    namespace_selector: list[LabelSelectorRequirement] | None = None
    object_selector: list[LabelSelectorRequirement] | None = None
    admission_review_versions: list[str] = field(default_factory=lambda: ["v1", "v1beta1"])


def convert_authn_extras(extra: Mapping[str, Sequence[str]] | None) -> dict[str, list[str]]:
    """Copy user extras into the form a subject access review takes."""
    return {key: list(values) for key, values in (extra or {}).items()}


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _diff(old: Any, new: Any, path: str) -> Iterator[dict[str, Any]]:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                yield {"op": "remove", "path": f"{path}/{_escape(key)}"}
        for key, value in new.items():
            child = f"{path}/{_escape(key)}"
            if key in old:
                yield from _diff(old[key], value, child)
            else:
                yield {"op": "add", "path": child, "value": value}
    elif type(old) is not type(new) or old != new:
        yield {"op": "replace", "path": path, "value": new}


def create_patch(raw: bytes | str, new_obj: Any, response: Response) -> None:
    """Store on the response a JSON patch turning raw into new_obj."""
    try:
        old = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as err:
        raise ValueError(f"unable to decode original object: {err}") from err
    new = json.loads(json.dumps(new_obj))
    response.patch = json.dumps(list(_diff(old, new, ""))).encode()
    response.patch_type = JSON_PATCH


def set_creator_id_annotation(
    request: Request, response: Response, raw: bytes | str, new_obj: dict[str, Any]
) -> None:
    """Annotate new_obj with the requesting user and patch the response."""
    metadata = new_obj.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[CREATOR_ID_ANNOTATION] = request.user_info.username
    metadata["annotations"] = annotations
    try:
        create_patch(raw, new_obj, response)
    except ValueError as err:
        raise ValueError(f"failed to create patch: {err}") from err


def response_allowed() -> Response:
    return Response(allowed=True)


def response_bad_request(message: str) -> Response:
    return Response(
        allowed=False,
        result=Status(status="Failure", message=message, reason=REASON_BAD_REQUEST, code=400),
    )


def _sub_path(gvr: GroupVersionResource) -> str:
    if not gvr.group:
        return gvr.resource
    return f"{gvr.resource}.{gvr.group}"


def create_webhook_name(handler: Any, suffix: str) -> str:
    """Name a webhook after the resource its handler serves."""
    sub_path = _sub_path(handler.gvr())
    if not suffix:
        return f"{WEBHOOK_PREFIX}.{sub_path}"
    return f"{WEBHOOK_PREFIX}.{sub_path}.{suffix}"


def new_default_webhook(
    handler: Any,
    client_config: WebhookClientConfig,
    scope: str,
    operations: Sequence[Operation],
) -> Webhook:
    """Build a webhook with default settings for a handler."""
    gvr = handler.gvr()
    sub_path = _sub_path(gvr)
    config = dataclasses.replace(client_config)
    if config.service_name is not None:
        base = (config.service_path or "").rstrip("/")
        config.service_path = f"{base}/{sub_path}"
    elif config.url is not None:
        config.url = f"{config.url}/{sub_path}"
    return Webhook(
        name=create_webhook_name(handler, ""),
        client_config=config,
        operations=list(operations),
        scope=scope,
        api_groups=[gvr.group],
        api_versions=[gvr.version],
        resources=[gvr.resource],
    )