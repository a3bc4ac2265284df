import json

import pytest

from admitguard.common import (
    AUDIT_LABEL,
    AUDIT_VERSION_LABEL,
    ENFORCE_LABEL,
    ENFORCE_VERSION_LABEL,
    WARN_LABEL,
    WARN_VERSION_LABEL,
)
from admitguard.models import (
    CLUSTER_SCOPE,
    FAIL,
    IGNORE,
    SELECTOR_IN,
    SELECTOR_NOT_IN,
    Operation,
    Request,
    UserInfo,
    WebhookClientConfig,
)
from admitguard.namespace import (
    LABEL_METADATA_NAME,
    MANAGE_NS_VERB,
    PROJECT_NS_ANNOTATION,
    PROJECTS_GVR,
    UPDATE_PSA_VERB,
    NamespaceValidator,
    ProjectNamespaceAdmitter,
    PSALabelAdmitter,
)

FAIL_SAR_USER = "nonadminuser"
ALLOW_SAR_USER = "adminuser"
SAR_ERROR_USER = "sarerroruser"


def _for_project_gvr(attrs):
    return (
        attrs.group == PROJECTS_GVR.group
        and attrs.version == PROJECTS_GVR.version
        and attrs.resource == PROJECTS_GVR.resource
    )


class ProjectSAR:
    def __init__(self, target, allowed, error):
        self.target = target
        self.allowed = allowed
        self.error = error

    def create(self, review):
        attrs = review.resource_attributes
        if _for_project_gvr(attrs) and attrs.verb == MANAGE_NS_VERB and attrs.name == self.target:
            if self.error:
                raise ConnectionError("error when creating sar, server unavailable")
            review.allowed = self.allowed
        return review


class UserSAR:
    def __init__(self):
        self.reviews = []

    def create(self, review):
        self.reviews.append(review)
        if review.user == FAIL_SAR_USER:
            review.allowed = False
            review.reason = f"Can not update project PSA for: {review.user}"
            return review
        if review.user == SAR_ERROR_USER:
            raise ConnectionError("SAR creation failed")
        review.allowed = True
        return review


def _annotation_request(new_value, old_value, include, operation):
    ns = {"metadata": {"name": "test-ns"}}
    if include:
        ns["metadata"]["annotations"] = {PROJECT_NS_ANNOTATION: new_value}
    req = Request(
        operation,
        user_info=UserInfo(username="test-user"),
        name="test-ns",
        object_raw=json.dumps(ns).encode(),
    )
    if operation is Operation.UPDATE:
        if include:
            ns["metadata"]["annotations"][PROJECT_NS_ANNOTATION] = old_value
        req.old_object_raw = json.dumps(ns).encode()
    return req


PROJECT_CASES = [
    ("user can access, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, True, False, False, True),
    ("user can access, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, True, False, False, True),
    ("user isn't modifying projectID, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123xyz:p-123xyz", True, False, False, False, True),
    ("user can't access, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, False, False, False, False),
    ("user can't access, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, False, False, False, False),
    ("no annotation, create", Operation.CREATE, "", "", False, False, False, False, True),
    ("no annotation, update", Operation.UPDATE, "", "", False, False, False, False, True),
    ("invalid annotation, create", Operation.CREATE, "not-valid-project", "", True, False, False, True, False),
    ("invalid annotation, update", Operation.UPDATE, "not-valid-project", "c-123abc:p-123abc", True, False, False, True, False),
    ("empty annotation, create", Operation.CREATE, "", "", True, False, False, True, False),
    ("empty annotation, update", Operation.UPDATE, "", "c-123abc:p-123abc", True, False, False, True, False),
    ("empty old annotation, update", Operation.UPDATE, "c-123xyz:p-123xyz", "", True, False, False, False, False),
    ("sar error, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, False, True, True, False),
    ("sar error, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, False, True, True, False),
]


@pytest.mark.parametrize(
    "name,operation,new_value,old_value,include,can_access,sar_error,want_error,want_allowed",
    PROJECT_CASES,
    ids=[case[0] for case in PROJECT_CASES],
)
def test_project_namespace_annotations(
    name, operation, new_value, old_value, include, can_access, sar_error, want_error, want_allowed
):
    admitter = ProjectNamespaceAdmitter(ProjectSAR("p-123xyz", can_access, sar_error))
    request = _annotation_request(new_value, old_value, include, operation)
    if want_error:
        with pytest.raises(Exception):
            admitter.admit(request)
    else:
        assert admitter.admit(request).allowed is want_allowed


def test_project_denial_carries_forbidden_status():
    admitter = ProjectNamespaceAdmitter(ProjectSAR("p-123xyz", False, False))
    response = admitter.admit(_annotation_request("c-123xyz:p-123xyz", "", True, Operation.CREATE))
    assert response.result.status == "Failure"
    assert response.result.code == 403


PSA_CASES = [
    ("Update namespace PSA for admin user-should be allowed", ALLOW_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline"}, {}, False, True),
    ("Update NON PSA for NON admin user-should be allowed", FAIL_SAR_USER, Operation.UPDATE,
     {"someotherlabelkey": "somevalue", ENFORCE_LABEL: "baseline"}, {ENFORCE_LABEL: "baseline"}, False, True),
    ("Update PSA for NON admin user-should not be allowed", FAIL_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline"}, {}, False, False),
    ("Update multiple PSA for allowed user", ALLOW_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline", WARN_LABEL: "baseline", AUDIT_LABEL: "baseline"}, {}, False, True),
    ("Update multiple PSA and non PSA for allowed user", ALLOW_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline", WARN_LABEL: "baseline", AUDIT_LABEL: "baseline",
      AUDIT_VERSION_LABEL: "restricted", WARN_VERSION_LABEL: "restricted",
      ENFORCE_VERSION_LABEL: "restricted", "randomkey": "randomvalue"}, {}, False, True),
    ("Update multiple PSA and non PSA for non allowed user", FAIL_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline", WARN_LABEL: "baseline", AUDIT_LABEL: "baseline",
      "randomkey": "randomvalue"}, {}, False, False),
    ("Update things unrelated to PSA labels", ALLOW_SAR_USER, Operation.UPDATE,
     {"randomkey": "randomvalue"}, {}, False, True),
    ("SAR create failed for update attempt", SAR_ERROR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline"}, {}, True, True),
    ("Create namespace with PSA for admin user-should be allowed", ALLOW_SAR_USER, Operation.CREATE,
     {ENFORCE_LABEL: "baseline"}, None, False, True),
    ("Create namespace with PSA for not-permitted user should not be allowed", FAIL_SAR_USER, Operation.CREATE,
     {ENFORCE_LABEL: "baseline"}, None, False, False),
    ("Delete update PSA for NON admin user-should not be allowed", FAIL_SAR_USER, Operation.UPDATE,
     {}, {ENFORCE_LABEL: "baseline"}, False, False),
    ("Delete update PSA for admin user should be allowed", ALLOW_SAR_USER, Operation.UPDATE,
     {}, {ENFORCE_LABEL: "baseline"}, False, True),
]


def _psa_request(user, operation, labels, old_labels):
    req = Request(
        operation,
        user_info=UserInfo(username=user),
        name="anynamespace",
        object_raw=json.dumps({"metadata": {"name": "anynamespace", "labels": labels}}).encode(),
    )
    if operation is Operation.UPDATE:
        old = {"metadata": {"name": "anynamespace", "labels": old_labels}}
        req.old_object_raw = json.dumps(old).encode()
    return req


@pytest.mark.parametrize(
    "name,user,operation,labels,old_labels,want_err,allowed",
    PSA_CASES,
    ids=[case[0] for case in PSA_CASES],
)
def test_validate_psa_labels(name, user, operation, labels, old_labels, want_err, allowed):
    admitter = PSALabelAdmitter(UserSAR())
    request = _psa_request(user, operation, labels, old_labels)
    if want_err:
        with pytest.raises(RuntimeError, match="SAR request creation failed"):
            admitter.admit(request)
    else:
        assert admitter.admit(request).allowed is allowed


def test_psa_sar_targets_projects_with_update_verb():
    sar = UserSAR()
    admitter = PSALabelAdmitter(sar)
    admitter.admit(_psa_request(ALLOW_SAR_USER, Operation.CREATE, {ENFORCE_LABEL: "baseline"}, None))
    assert len(sar.reviews) == 1
    attrs = sar.reviews[0].resource_attributes
    assert attrs.verb == UPDATE_PSA_VERB
    assert _for_project_gvr(attrs)


def test_psa_denial_message_from_review():
    admitter = PSALabelAdmitter(UserSAR())
    response = admitter.admit(_psa_request(FAIL_SAR_USER, Operation.CREATE, {ENFORCE_LABEL: "b"}, None))
    assert response.result.message == f"Can not update project PSA for: {FAIL_SAR_USER}"


def test_psa_bad_object_raises():
    admitter = PSALabelAdmitter(UserSAR())
    with pytest.raises(ValueError, match="failed to decode namespace from request"):
        admitter.admit(Request(Operation.CREATE, object_raw=b"{broken"))


def test_gvr():
    gvr = NamespaceValidator(None).gvr()
    assert gvr.version == "v1"
    assert gvr.resource == "namespaces"
    assert gvr.group == ""


def test_operations():
    operations = NamespaceValidator(None).operations()
    assert len(operations) == 2
    assert Operation.UPDATE in operations
    assert Operation.CREATE in operations


def test_admitters():
    admitters = NamespaceValidator(None).admitters()
    assert len(admitters) == 2
    assert any(isinstance(a, PSALabelAdmitter) for a in admitters)
    assert any(isinstance(a, ProjectNamespaceAdmitter) for a in admitters)


def test_validating_webhook():
    webhooks = NamespaceValidator(None).validating_webhook(WebhookClientConfig(url="test.cattle.io"))
    assert len(webhooks) == 3
    has_update = has_create_non_kube = has_create_kube = False
    for webhook in webhooks:
        assert webhook.client_config.url == "test.cattle.io/namespaces"
        assert len(webhook.operations) == 1
        assert webhook.scope == CLUSTER_SCOPE
        operation = webhook.operations[0]
        assert operation in (Operation.CREATE, Operation.UPDATE)
        if operation is Operation.UPDATE:
            assert not has_update
            has_update = True
            assert webhook.namespace_selector is None
            assert webhook.object_selector is None
            assert webhook.failure_policy == FAIL
        else:
            assert len(webhook.namespace_selector) == 1
            expression = webhook.namespace_selector[0]
            assert expression.values == ["kube-system"]
            assert expression.key == LABEL_METADATA_NAME
            assert expression.operator in (SELECTOR_IN, SELECTOR_NOT_IN)
            if expression.operator == SELECTOR_IN:
                assert not has_create_kube
                has_create_kube = True
                assert webhook.failure_policy == IGNORE
            else:
                assert not has_create_non_kube
                has_create_non_kube = True
                assert webhook.failure_policy == FAIL
    assert has_update and has_create_kube and has_create_non_kube


def test_webhook_names_are_distinct():
    webhooks = NamespaceValidator(None).validating_webhook(WebhookClientConfig(url="test.cattle.io"))
    names = [w.name for w in webhooks]
    assert len(set(names)) == 3
    assert any(name.endswith("create-non-kubesystem") for name in names)