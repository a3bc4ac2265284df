# admitguard

Admission checks for cluster resources. Each handler takes an admission
`Request` and returns a `Response` that says whether the change is allowed.
A handler raises an exception when it cannot process the request at all, for
example when the object JSON does not decode or a lookup fails.

## What it covers

- **Namespaces** (`admitguard.namespace`)
  - `PSALabelAdmitter` checks changes to pod-security labels. A user may add, change or remove them only if a subject access review grants the `updatepsa` verb on `projects`.
  - `ProjectNamespaceAdmitter` checks moves of a namespace into a project, which are set through the `field.cattle.io/projectId` annotation. The user must hold `manage-namespaces` on the target project.
  - `NamespaceValidator` groups both admitters. Its `validating_webhook` builds three webhook configurations:
    - one for update;
    - one for create outside `kube-system`;
    - one for create inside `kube-system`, with failure policy `Ignore`.
- **Secrets** (`admitguard.secret`)
  - `SecretMutator` adds the creator annotation to cloud-credential secrets when they are created.
  - On delete, `SecretMutator` reduces to `delete` only any role that reaches it through a role binding owned by the secret and that grants read access to that secret.
  - `SecretValidator`, through `SecretOrphanAdmitter`, refuses a delete with `orphanDependents: true` or `propagationPolicy: Orphan` while the secret still owns roles or role bindings.
  - The helpers `role_binding_indexer`, `secret_owner_indexer` and `amend_rules_to_only_permit_delete` are public.
- **Features** (`admitguard.feature`)
  - `FeatureValidator` and `FeatureAdmitter` refuse to change the value of a feature whose status carries a locked value, unless the new value equals the locked one.
  - `is_update_allowed` is the rule they apply.
- **Cluster role template bindings** (`admitguard.crtb`)
  - On update, `CRTBValidator` (through `CRTBAdmitter`) checks which fields may change; `validate_update_fields` is the check.
  - On create, it checks that the required fields are present, and that the role template exists, is not locked and has the `cluster` context.
  - It then calls an escalation check that you supply.
- **Clusters** (`admitguard.cluster`)
  - `ClusterValidator` and `ClusterAdmitter` stop a fleet workspace name from being cleared once set.
  - They ask a subject access review for `fleetaddcluster` when the name is set or changed.
  - For clusters that carry an RKE config, they also check pod security admission templates and refuse PSP on Kubernetes 1.25 and above.
- **Shared helpers**
  - `admitguard.common` holds `PolicyRule`, `is_updating_psa_config`, `is_creating_psa_config`, `check_creator_id` and `check_for_verbs`.
  - `admitguard.models` holds the request, response and webhook types, plus:
    - `create_patch` (JSON patch between two documents);
    - `set_creator_id_annotation`;
    - `response_allowed` and `response_bad_request`;
    - `create_webhook_name` and `new_default_webhook`.

## Installing

```
pip install admitguard
```

To install with the test dependencies:

```
pip install "admitguard[test]"
```

## Example

```python
from admitguard.feature import FeatureValidator
from admitguard.models import Operation, Request, UserInfo

admitter = FeatureValidator().admitters()[0]

request = Request(
    operation=Operation.UPDATE,
    user_info=UserInfo(username="test-user"),
    object_raw=b'{"spec": {"value": false}, "status": {"lockedValue": true}}',
    old_object_raw=b'{"spec": {"value": true}}',
)
response = admitter.admit(request)
print(response.allowed)          # False
print(response.result.message)   # feature flag cannot be changed from current value: true
```

## Collaborators you supply

The handlers do not talk to a cluster themselves. You pass in objects with
these methods:

- **Reviewer.** `create(review)` takes a `SubjectAccessReview` and returns an object with `allowed` and `reason`.
- **Caches.** `get(...)`, `get_by_index(index, key)` and `add_indexer(name, func)` look up roles, role bindings and role templates. A missing object is reported by raising `NotFoundError`.
- **Role controller.** `update(role)` writes back amended roles. The role binding controller exposes its cache as `cache`.
- **Escalation check.** For `CRTBValidator`, a callable `(request, rules, cluster_name)` that raises `PermissionError` when the user may not grant the rules.
- **Pod security helper.** For `ClusterValidator`, an object following `PodSecurityHelper` that reads PodSecurity plugin configuration from clusters and templates.

## What it does not do

There is no HTTP server, no command-line program, and nothing that registers
webhooks with an API server. `validating_webhook` and `mutating_webhook` only
return `Webhook` descriptions.

The package ships none of the following; you must supply them:

- subject access review client;
- caches;
- privilege-escalation resolver;
- pod security helper.

## Running the tests

```
pytest
```