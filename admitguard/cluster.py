"""Admission of management clusters: fleet workspace, pod security templates and PSP."""

from __future__ import annotations

import http
import json
import re
from typing import Any, Mapping, Protocol

from admitguard.models import (
    CLUSTER_SCOPE,
    IGNORE,
    REASON_INVALID,
    REASON_UNAUTHORIZED,
    GroupVersionResource,
    NotFoundError,
    Operation,
    Request,
    ResourceAttributes,
    Response,
    Status,
    SubjectAccessReview,
    Webhook,
    WebhookClientConfig,
    convert_authn_extras,
    new_default_webhook,
    response_allowed,
    response_bad_request,
)

CLUSTERS_GVR = GroupVersionResource("management.cattle.io", "v3", "clusters")
FLEET_ADD_CLUSTER_VERB = "fleetaddcluster"
FLEET_WORKSPACES_RESOURCE = "fleetworkspaces"
LOCAL_CLUSTER = "local"
ADMISSION_CONFIG_FILE_ARG = "admission-control-config-file"

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

_PSACT_TOO_OLD = (
    "PodSecurityAdmissionConfigurationTemplate(PSACT) is only supported in k8s version 1.23 and above"
)
_PSACT_SAME_AS_BEFORE = (
    "The Plugin Config for PodSecurity under kube-api.admission_configuration is the same as the "
    "previously-set PodSecurityAdmissionConfigurationTemplate. Please either change the Plugin "
    "Config or set the DefaultPodSecurityAdmissionConfigurationTemplateName."
)
_EXTERNAL_CONFIG_FILE = (
    "could not use external admission control configuration file when using "
    "PodSecurityAdmissionConfigurationTemplate"
)
_PSA_CONFIG_MISSING = "PodSecurity Configuration is not found under kube-api.admission_configuration"
_PSA_CONFIG_MISMATCH = (
    "PodSecurity Configuration under kube-api.admission_configuration "
    "does not match the content of the PodSecurityAdmissionConfigurationTemplate"
)
_PSP_NOT_ALLOWED = (
    "cannot enable PodSecurityPolicy(PSP) or use PSP Template in cluster which k8s version "
    "is 1.25 and above"
)


def _version_key(text: str) -> tuple[Any, ...]:
    """A sort key ordering semantic versions by precedence."""
    match = _SEMVER.match(text)
    if match is None:
        raise ValueError(f"invalid semantic version: {text!r}")
    major, minor, patch, pre = match.groups()
    if pre is None:
        pre_key: tuple[Any, ...] = (1,)
    else:
        pre_key = (
            0,
            tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in pre.split(".")),
        )
    return int(major), int(minor), int(patch), pre_key


_BELOW_123 = _version_key("1.23.0-rancher0")
_BELOW_125 = _version_key("1.25.0-rancher0")


class PodSecurityHelper(Protocol):
    """Reads pod security admission settings out of clusters and templates."""

    def cluster_version(self, kubernetes_version: str) -> str:
        """The semantic version of a cluster's Kubernetes version string."""

    def plugin_config_from_template(self, template: Any, kubernetes_version: str) -> Mapping[str, Any]:
        """The PodSecurity plugin configuration a template describes."""

    def plugin_config_from_cluster(self, cluster: Mapping[str, Any]) -> tuple[Mapping[str, Any] | None, bool]:
        """The PodSecurity plugin configuration set on a cluster, and whether there is one."""


def _str(document: Mapping[str, Any], key: str) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key} must be a string, not {type(value).__name__}")
    return value


def _spec(cluster: Mapping[str, Any]) -> Mapping[str, Any]:
    return cluster.get("spec") or {}


def _name(cluster: Mapping[str, Any]) -> str:
    return _str(cluster.get("metadata") or {}, "name")


def _rke(cluster: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return _spec(cluster).get("rancherKubernetesEngineConfig")


def _kube_api(cluster: Mapping[str, Any]) -> Mapping[str, Any]:
    services = (_rke(cluster) or {}).get("services") or {}
    return services.get("kubeApi") or {}


def _fleet_workspace(cluster: Mapping[str, Any]) -> str:
    return _str(_spec(cluster), "fleetWorkspaceName")


def _psact_name(cluster: Mapping[str, Any]) -> str:
    return _str(_spec(cluster), "defaultPodSecurityAdmissionConfigurationTemplateName")


def _kubernetes_version(cluster: Mapping[str, Any]) -> str:
    return _str(_rke(cluster) or {}, "kubernetesVersion")


def _decode_configuration(plugin: Mapping[str, Any], where: str) -> Any:
    configuration = plugin.get("configuration")
    if isinstance(configuration, (bytes, bytearray, str)):
        try:
            return json.loads(configuration)
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise ValueError(f"failed to unmarshal PodSecurityConfiguration from {where}: {err}") from err
    return configuration


class ClusterAdmitter:
    """Checks fleet workspace permissions and pod security settings of clusters."""

    def __init__(self, sar: Any, psact: Any = None, psa: PodSecurityHelper | None = None) -> None:
        self.sar = sar
        self.psact = psact
        self.psa = psa

    def admit(self, request: Request) -> Response:
        try:
            response = self.validate_fleet_permissions(request)
        except Exception as err:
            raise RuntimeError(f"failed to validate fleet permissions: {err}") from err
        if not response.allowed:
            return response

        if request.operation in (Operation.CREATE, Operation.UPDATE):
            try:
                cluster = request.decoded_object()
                name = _name(cluster)
            except ValueError as err:
                raise ValueError(f"failed to get cluster from request: {err}") from err
            # The local cluster and imported or hosted clusters carry no RKE config to check.
            if name == LOCAL_CLUSTER or _rke(cluster) is None:
                return response_allowed()
            try:
                response = self._validate_psact(request)
            except Exception as err:
                raise RuntimeError(
                    "failed to validate PodSecurityAdmissionConfigurationTemplate(PSACT): "
                    f"{err}"
                ) from err
            if not response.allowed:
                return response
            try:
                response = self._validate_psp(cluster)
            except Exception as err:
                raise RuntimeError(f"failed to validate PSP: {err}") from err
            if not response.allowed:
                return response
        return response_allowed()

    def validate_fleet_permissions(self, request: Request) -> Response:
        """Check the requester may add clusters to the fleet workspace named on the cluster."""
        try:
            old, new = request.decoded_old_and_new()
            old_workspace = _fleet_workspace(old)
            new_workspace = _fleet_workspace(new)
        except ValueError as err:
            raise ValueError(f"failed to get old and new clusters from request: {err}") from err

        # Unsetting the workspace would delete the cluster, so it may not be cleared once set.
        if request.operation is Operation.UPDATE and not new_workspace and old_workspace:
            return Response(
                allowed=False,
                result=Status(
                    status="Failure",
                    message="once set, field FleetWorkspaceName cannot be made empty",
                    reason=REASON_INVALID,
                    code=http.HTTPStatus.BAD_REQUEST.value,
                ),
            )

        if not new_workspace or old_workspace == new_workspace:
            return Response(allowed=True)

        user = request.user_info
        review = SubjectAccessReview(
            resource_attributes=ResourceAttributes(
                verb=FLEET_ADD_CLUSTER_VERB,
                group=CLUSTERS_GVR.group,
                version=CLUSTERS_GVR.version,
                resource=FLEET_WORKSPACES_RESOURCE,
                name=new_workspace,
            ),
            user=user.username,
            groups=list(user.groups),
            uid=user.uid,
            extra=convert_authn_extras(user.extra),
        )
        try:
            result = self.sar.create(review)
        except Exception as err:
            raise RuntimeError(
                f"failed to check SubjectAccessReview for cluster [{_name(new)}]: {err}"
            ) from err

        if not result.allowed:
            return Response(
                allowed=False,
                result=Status(
                    status="Failure",
                    message=result.reason,
                    reason=REASON_UNAUTHORIZED,
                    code=http.HTTPStatus.UNAUTHORIZED.value,
                ),
            )
        return response_allowed()

    def _helper(self) -> PodSecurityHelper:
        if self.psa is None:
            raise RuntimeError("no pod security admission helper configured")
        return self.psa

    def _parsed_version(self, cluster: Mapping[str, Any]) -> tuple[Any, ...]:
        try:
            return _version_key(self._helper().cluster_version(_kubernetes_version(cluster)))
        except ValueError as err:
            raise ValueError(f"failed to parse cluster version: {err}") from err

    def _validate_psact(self, request: Request) -> Response:
        try:
            old, new = request.decoded_old_and_new()
            new_template = _psact_name(new)
            old_template = _psact_name(old)
        except ValueError as err:
            raise ValueError(f"failed to get old and new clusters from request: {err}") from err

        version = self._parsed_version(new)
        if version < _BELOW_123 and new_template:
            return response_bad_request(_PSACT_TOO_OLD)

        if new_template:
            try:
                return self._check_psa_config_on_cluster(new)
            except Exception as err:
                raise RuntimeError(
                    f"failed to check the PodSecurity Config in the cluster {_name(new)}: {err}"
                ) from err

        # The template is being unset: the plugin config left behind must not just copy it.
        if request.operation is Operation.UPDATE and old_template:
            psa = self._helper()
            new_config, found = psa.plugin_config_from_cluster(new)
            if not found:
                return response_allowed()
            old_config, _ = psa.plugin_config_from_cluster(old)
            if new_config == old_config:
                return response_bad_request(_PSACT_SAME_AS_BEFORE)
        return response_allowed()

    def _check_psa_config_on_cluster(self, cluster: Mapping[str, Any]) -> Response:
        extra_args = _kube_api(cluster).get("extraArgs") or {}
        if ADMISSION_CONFIG_FILE_ARG in extra_args:
            return response_bad_request(_EXTERNAL_CONFIG_FILE)

        name = _psact_name(cluster)
        try:
            template = self.psact.get(name)
        except NotFoundError as err:
            return response_bad_request(str(err))
        except Exception as err:
            raise RuntimeError(
                f"failed to get PodSecurityAdmissionConfigurationTemplate [{name}]: {err}"
            ) from err

        psa = self._helper()
        try:
            from_template = psa.plugin_config_from_template(template, _kubernetes_version(cluster))
        except Exception as err:
            raise RuntimeError(f"failed to get the PluginConfig: {err}") from err

        from_cluster, found = psa.plugin_config_from_cluster(cluster)
        if not found or from_cluster is None:
            return response_bad_request(_PSA_CONFIG_MISSING)

        expected = _decode_configuration(from_template, "template")
        actual = _decode_configuration(from_cluster, "admissionConfig")
        if expected != actual:
            return response_bad_request(_PSA_CONFIG_MISMATCH)
        return response_allowed()

    def _validate_psp(self, cluster: Mapping[str, Any]) -> Response:
        if self._parsed_version(cluster) < _BELOW_125:
            return response_allowed()
        psp_template = _str(_spec(cluster), "defaultPodSecurityPolicyTemplateName")
        if psp_template or _kube_api(cluster).get("podSecurityPolicy") is True:
            return response_bad_request(_PSP_NOT_ALLOWED)
        return response_allowed()


class ClusterValidator:
    """Validates management cluster create, update and delete requests."""

    def __init__(self, sar: Any, psact: Any = None, psa: PodSecurityHelper | None = None) -> None:
        self.admitter = ClusterAdmitter(sar, psact, psa)

    def gvr(self) -> GroupVersionResource:
        return CLUSTERS_GVR

    def operations(self) -> list[Operation]:
        return [Operation.CREATE, Operation.UPDATE, Operation.DELETE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[Webhook]:
        webhook = new_default_webhook(self, client_config, CLUSTER_SCOPE, self.operations())
        webhook.failure_policy = IGNORE
        return [webhook]

    def admitters(self) -> list[ClusterAdmitter]:
        return [self.admitter]