import pytest

from admitguard.common import (
    AUDIT_LABEL,
    ENFORCE_LABEL,
    PSA_LABELS,
    WARN_VERSION_LABEL,
    PolicyRule,
    check_creator_id,
    check_for_verbs,
    is_creating_psa_config,
    is_updating_psa_config,
)
from admitguard.models import CREATOR_ID_ANNOTATION, REASON_INVALID, Operation, Request, UserInfo


def _obj(annotations=None):
    meta = {"name": "obj"}
    if annotations is not None:
        meta["annotations"] = annotations
    return {"metadata": meta}


def _request(operation, user="test-user"):
    return Request(operation, user_info=UserInfo(username=user))


def test_updating_psa_config_detects_change():
    assert is_updating_psa_config({}, {ENFORCE_LABEL: "baseline"}) is True
    assert is_updating_psa_config({AUDIT_LABEL: "baseline"}, {}) is True
    assert is_updating_psa_config({ENFORCE_LABEL: "x"}, {ENFORCE_LABEL: "x", "other": "y"}) is False
    assert is_updating_psa_config(None, None) is False


@pytest.mark.parametrize("label", PSA_LABELS)
def test_creating_psa_config_each_label(label):
    assert is_creating_psa_config({label: "restricted"}) is True


def test_creating_psa_config_ignores_other_labels():
    assert is_creating_psa_config({"randomkey": "randomvalue"}) is False
    assert is_creating_psa_config({"randomkey": "v", WARN_VERSION_LABEL: "v"}) is True


def test_check_creator_id_create_matches():
    req = _request(Operation.CREATE)
    assert check_creator_id(req, None, _obj({CREATOR_ID_ANNOTATION: "test-user"})) is None


def test_check_creator_id_create_mismatch():
    status = check_creator_id(_request(Operation.CREATE), None, _obj({CREATOR_ID_ANNOTATION: "other"}))
    assert status.message == "creatorID annotation does not match user"
    assert status.reason == REASON_INVALID
    assert status.code == 422


def test_check_creator_id_update_removal_allowed():
    req = _request(Operation.UPDATE)
    assert check_creator_id(req, _obj({CREATOR_ID_ANNOTATION: "a"}), _obj()) is None


def test_check_creator_id_update_change_denied():
    req = _request(Operation.UPDATE)
    status = check_creator_id(req, _obj({CREATOR_ID_ANNOTATION: "a"}), _obj({CREATOR_ID_ANNOTATION: "b"}))
    assert status.message == "creatorID annotation cannot be changed"
    unchanged = check_creator_id(req, _obj({CREATOR_ID_ANNOTATION: "a"}), _obj({CREATOR_ID_ANNOTATION: "a"}))
    assert unchanged is None


def test_check_for_verbs():
    check_for_verbs([PolicyRule(verbs=["get"])])
    with pytest.raises(ValueError, match="policyRules must have at least one verb"):
        check_for_verbs([PolicyRule(verbs=["get"]), PolicyRule(resources=["pods"])])


def test_policy_rule_str_mentions_fields():
    text = str(PolicyRule(verbs=["get", "list"], resources=["pods"]))
    assert "get list" in text
    assert "pods" in text