# clusteradmit

Admission rules for namespace and secret resources. The rules decide whether
a create, update or delete request is allowed. Where needed, they also change
the object before it is stored. The package also works out which RBAC policy
rules a user or group gets from cluster and project role template bindings.

It has no dependencies outside the standard library.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `clusteradmit.admission`

This module holds the request and response types: `Request`, `UserInfo`,
`AdmissionResponse`, `Status` and `Operation`. Object payloads on a `Request`
(`object`, `old_object`, `options`) are raw JSON bytes.

- Subject access reviews: `SubjectAccessReview` and `ResourceAttributes`.
- Webhook configuration: `WebhookClientConfig`, `RuleWithOperations`,
  `LabelSelector`, `LabelSelectorRequirement`, `ValidatingWebhook` and
  `MutatingWebhook`.
- `NotFoundError`: raised by caches and controllers when an object is missing.
- `response_allowed()` and `response_bad_request(message)`.
- `check_creator_id(request, old_obj, new_obj)`. It returns a failure `Status`
  in two cases: the creator-id annotation does not match the user on create,
  or the annotation is changed on update. Otherwise it returns `None`.
  Removing the annotation on update is allowed.
- `set_creator_id_annotation(request, response, raw, new_obj)`. It annotates
  `new_obj` with the requesting user and puts the resulting patch on the
  response.
- `create_patch(raw, new_obj, response)`. It computes a JSON patch from the
  original JSON to `new_obj` and stores it on the response.
- `convert_authn_extras(extra)`.
- `new_default_validating_webhook`, `new_default_mutating_webhook` and
  `create_webhook_name`. These build webhook entries for a handler that has a
  `gvr()` method.

### `clusteradmit.psa`

- `is_creating_psa_config(new)` reports whether a label set contains any of
  the pod security admission labels.
- `is_updating_psa_config(old, new)` reports whether any of those labels
  differ between two label sets.

### `clusteradmit.resolvers`

- `PolicyRule` and `RoleRef`.
- `RuleAccumulator` and `visit_rules`.
- `get_user_key` and `get_group_key`, which build index keys.
- `ResolutionError` and `AggregateRuleResolver`. The aggregate resolver merges
  the rules of several resolvers.

### `clusteradmit.bindings`

- `ClusterRoleTemplateBinding` and `ProjectRoleTemplateBinding`.
- `crtb_by_subject`, `prtb_by_subject` and `namespace_from_project`.
- `CRTBRuleResolver` and `PRTBRuleResolver`.

Each resolver takes two collaborators:

- An indexed cache of bindings, with `add_indexer(name, fn)` and
  `get_by_index(name, key)`.
- A role template resolver, with `rules_from_template_name(name)`.

### `clusteradmit.namespace`

The namespace `Validator` has two admitters:

- `PSALabelAdmitter` asks for the `updatepsa` permission on projects before PSA
  labels may be added, changed or removed.
- `ProjectNamespaceAdmitter` asks for `manage-namespaces` on the target project
  when the `field.cattle.io/projectId` annotation is set or changed.

Both admitters take a reviewer object with `create(context, review)`. It
returns a `SubjectAccessReview` with `allowed` and `reason` filled in.

`Validator.validating_webhook` returns three webhooks:

- one for updates;
- one for creates outside `kube-system`;
- one for creates in `kube-system` only, with failure policy `Ignore`.

### `clusteradmit.secret`

The secret `Mutator` works on create and on delete:

- On create, it stamps cloud-credential secrets with the creator annotation.
- On delete, it finds the Roles bound by RoleBindings the secret owns. It cuts
  the narrow rules that grant get access to that secret down to `delete`
  only.
- It raises `ValueError` for any other operation.

The secret `Validator`, through its `SecretAdmitter`, refuses deletions that
would orphan dependents (`orphanDependents: true` or `propagationPolicy:
Orphan`) while the secret owns Roles or RoleBindings.

The module also has `OwnerReference`, `ObjectMeta`, `Role`, `RoleBinding`,
`role_binding_indexer`, `secret_owner_indexer` and
`amend_rules_to_only_permit_delete`.

## Example

```python
from clusteradmit.resolvers import AggregateRuleResolver, ResolutionError

resolver = AggregateRuleResolver(crtb_resolver, prtb_resolver)
try:
    rules = resolver.rules_for(user, "c-abc12")
except ResolutionError as err:
    rules = err.rules  # whatever could still be resolved
```

`rules_for` collects every rule it can find. If any lookup failed, it raises
`ResolutionError`, which carries all the errors and the partial list of rules.

Admitters take a `Request` and return an `AdmissionResponse`. If a request
cannot be processed at all, for example because its payload cannot be decoded
or a lookup failed, they raise an exception.

## What it does not do

- It has no HTTP server: it does not receive admission reviews or register
  webhooks with a cluster.
- It has no cluster client. The caller supplies the caches, controllers,
  subject access reviewer and role template resolver, as objects with the
  methods described above.