"""Admission of secrets that own RBAC objects."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Protocol

from clusteradmit.admission import (
    NAMESPACED_SCOPE,
    SIDE_EFFECT_CLASS_NONE,
    SIDE_EFFECT_CLASS_NONE_ON_DRY_RUN,
    AdmissionResponse,
    GroupVersionResource,
    MutatingWebhook,
    NotFoundError,
    Operation,
    Request,
    ValidatingWebhook,
    WebhookClientConfig,
    new_default_mutating_webhook,
    new_default_validating_webhook,
    response_allowed,
    response_bad_request,
    set_creator_id_annotation,
)
from clusteradmit.resolvers import PolicyRule, RoleRef

logger = logging.getLogger(__name__)

MUTATOR_ROLE_BINDING_OWNER_INDEX = "webhook.cattle.io/role-binding-index"
ROLE_OWNER_INDEX = "webhook.cattle.io/role-owner-index"
ROLE_BINDING_OWNER_INDEX = "webhook.cattle.io/role-binding-owner-index"
CLOUD_CREDENTIAL_TYPE = "provisioning.cattle.io/cloud-credential"
LOG_PREFIX = "validator/corev1/secret"

_OWNER_KIND = "Secret"
_CORE_API_VERSION = "v1"
_DELETE_PROPAGATION_ORPHAN = "Orphan"

_GVR = GroupVersionResource(group="", version="v1", resource="secrets")


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
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass
class Role:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    rules: list[PolicyRule] = field(default_factory=list)


@dataclass
class RoleBinding:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    role_ref: RoleRef = field(default_factory=RoleRef)


class IndexedCache(Protocol):
    def add_indexer(self, name: str, indexer: Callable[[Any], list[str]]) -> None: ...

    def get_by_index(self, name: str, key: str) -> list[Any]: ...


class RoleCache(IndexedCache, Protocol):
    def get(self, namespace: str, name: str) -> Role: ...


class RoleController(Protocol):
    cache: RoleCache

    def update(self, role: Role) -> Role: ...


class RoleBindingController(Protocol):
    cache: IndexedCache


@dataclass
class _Secret:
    name: str = ""
    namespace: str = ""
    type: str = ""


@dataclass
class _DeleteOptions:
    orphan_dependents: bool | None = None
    propagation_policy: str | None = None


_SECRET_FIELDS = {
    "kind": str,
    "apiversion": str,
    "metadata": dict,
    "immutable": bool,
    "data": dict,
    "stringdata": dict,
    "type": str,
}
_META_FIELDS = {
    "name": str,
    "namespace": str,
    "generatename": str,
    "uid": str,
    "resourceversion": str,
    "labels": dict,
    "annotations": dict,
    "ownerreferences": list,
    "finalizers": list,
}
_DELETE_OPTIONS_FIELDS = {
    "kind": str,
    "apiversion": str,
    "graceperiodseconds": int,
    "preconditions": dict,
    "orphandependents": bool,
    "propagationpolicy": str,
    "dryrun": list,
}


def _matches(value: Any, expected: type) -> bool:
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


def _check_object(data: Any, schema: dict[str, type], what: str) -> dict[str, Any]:
    """Validate known fields (matched case-insensitively) and return them by lower-case key."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object")
    fields: dict[str, Any] = {}
    for key, value in data.items():
        expected = schema.get(key.lower())
        if expected is None or value is None:
            continue
        if not _matches(value, expected):
            raise ValueError(f"{what}.{key} must be of type {expected.__name__}")
        fields[key.lower()] = value
    return fields


def _decode_secret(raw: bytes) -> _Secret:
    fields = _check_object(json.loads(raw), _SECRET_FIELDS, "secret")
    meta = _check_object(fields.get("metadata"), _META_FIELDS, "secret.metadata")
    return _Secret(
        name=meta.get("name", ""),
        namespace=meta.get("namespace", ""),
        type=fields.get("type", ""),
    )


def _secret_from_request(request: Request) -> _Secret:
    raw = request.old_object if request.operation == Operation.DELETE else request.object
    try:
        return _decode_secret(raw)
    except (TypeError, ValueError) as err:
        raise ValueError(f"failed to decode secret from request: {err}") from err


def _decode_delete_options(raw: bytes) -> _DeleteOptions:
    fields = _check_object(json.loads(raw), _DELETE_OPTIONS_FIELDS, "deleteOptions")
    return _DeleteOptions(
        orphan_dependents=fields.get("orphandependents"),
        propagation_policy=fields.get("propagationpolicy"),
    )


def _owner_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def role_binding_indexer(role_binding: RoleBinding) -> list[str]:
    """Index a binding to a Role by every secret that owns it."""
    if role_binding.role_ref.kind != "Role":
        return []
    meta = role_binding.metadata
    return [
        _owner_key(meta.namespace, owner.name)
        for owner in meta.owner_references
        if owner.api_version == _CORE_API_VERSION and owner.kind == _OWNER_KIND
    ]


def secret_owner_indexer(meta: ObjectMeta) -> list[str]:
    """Index an object by every secret that owns it."""
    return [
        _owner_key(meta.namespace, owner.name)
        for owner in meta.owner_references
        if owner.api_version == _GVR.version and owner.kind == _OWNER_KIND
    ]


def _grants_get(rule: PolicyRule, secret_name: str) -> bool:
    api_group_matches = len(rule.api_groups) == 1 and rule.api_groups[0] in ("", "*")
    resource_matches = rule.resources == ["secrets"]
    name_matches = rule.resource_names == [secret_name]
    has_get = any(verb in ("get", "*") for verb in rule.verbs)
    return api_group_matches and resource_matches and name_matches and has_get


def amend_rules_to_only_permit_delete(
    rules: list[PolicyRule], secret_name: str
) -> tuple[list[PolicyRule], bool]:
    """Reduce rules granting access to the named secret to delete-only.

    Only the narrow rule shape used for cloud credentials is targeted; broader
    rules that happen to cover the secret are left alone.
    """
    amended = False
    result = []
    for rule in rules:
        if _grants_get(rule, secret_name):
            amended = True
            rule = replace(rule, verbs=["delete"])
        result.append(rule)
    return result, amended


class Mutator:
    """Annotates cloud credentials on create and de-powers owned roles on delete."""

    def __init__(self, role_controller: RoleController, role_binding_controller: RoleBindingController):
        role_binding_controller.cache.add_indexer(
            MUTATOR_ROLE_BINDING_OWNER_INDEX, role_binding_indexer
        )
        self.role_controller = role_controller
        self.role_binding_controller = role_binding_controller

    def gvr(self) -> GroupVersionResource:
        return _GVR

    def operations(self) -> list[Operation]:
        return [Operation.CREATE, Operation.DELETE]

    def mutating_webhook(self, client_config: WebhookClientConfig) -> list[MutatingWebhook]:
        webhook = new_default_mutating_webhook(
            self, client_config, NAMESPACED_SCOPE, self.operations()
        )
        webhook.side_effects = SIDE_EFFECT_CLASS_NONE_ON_DRY_RUN
        webhook.timeout_seconds = 15
        return [webhook]

    def admit(self, request: Request) -> AdmissionResponse:
        if request.dry_run:
            return AdmissionResponse(allowed=True)

        secret = _secret_from_request(request)
        if request.operation == Operation.CREATE:
            return self._admit_create(secret, request)
        if request.operation == Operation.DELETE:
            return self._admit_delete(secret)
        raise ValueError(f'operation type "{request.operation.value}" not handled')

    def _admit_create(self, secret: _Secret, request: Request) -> AdmissionResponse:
        if secret.type != CLOUD_CREDENTIAL_TYPE:
            return AdmissionResponse(allowed=True)

        logger.debug(
            "[secret-mutation] adding creatorID %s to secret: %s",
            request.user_info.username,
            secret.name,
        )
        new_obj = json.loads(request.object)
        response = AdmissionResponse()
        set_creator_id_annotation(request, response, request.object, new_obj)
        response.allowed = True
        return response

    def _admit_delete(self, secret: _Secret) -> AdmissionResponse:
        try:
            bindings = self.role_binding_controller.cache.get_by_index(
                MUTATOR_ROLE_BINDING_OWNER_INDEX, _owner_key(secret.namespace, secret.name)
            )
        except Exception as err:
            raise RuntimeError(
                f"unable to determine if secret {secret.namespace}/{secret.name} "
                f"has rbac references: {err}"
            ) from err

        for binding in bindings:
            role_ns, role_name = binding.metadata.namespace, binding.role_ref.name
            where = (
                f"role {role_ns}/{role_name} granted by binding "
                f"{binding.metadata.namespace}/{binding.metadata.name} owned by the secret"
            )
            try:
                role = self.role_controller.cache.get(role_ns, role_name)
            except NotFoundError:
                # A missing role grants nothing, so there is nothing to revoke.
                continue
            except Exception as err:
                raise RuntimeError(f"unable to evaluate {where}: {err}") from err

            rules, amended = amend_rules_to_only_permit_delete(role.rules, secret.name)
            if not amended:
                continue
            role.rules = rules
            try:
                self.role_controller.update(role)
            except NotFoundError:
                # The role may have been removed in the meantime.
                pass
            except Exception as err:
                raise RuntimeError(f"unable to revoke permissions on {where}: {err}") from err
        return response_allowed()


class SecretAdmitter:
    """Denies deletions that would orphan RBAC objects owned by the secret."""

    def __init__(self, role_cache: IndexedCache, role_binding_cache: IndexedCache):
        self.role_cache = role_cache
        self.role_binding_cache = role_binding_cache

    def admit(self, request: Request) -> AdmissionResponse:
        try:
            options = _decode_delete_options(request.options)
        except (TypeError, ValueError) as err:
            raise ValueError(f"unable to unmarshal delete options {err}") from err

        orphans = options.orphan_dependents is True
        orphan_policy = options.propagation_policy == _DELETE_PROPAGATION_ORPHAN
        if not orphans and not orphan_policy:
            return response_allowed()

        try:
            secret = _secret_from_request(request)
        except ValueError as err:
            raise ValueError(f"unable to read secret from request: {err}") from err

        try:
            roles, role_bindings = self._rbac_refs(secret)
        except Exception as err:
            raise RuntimeError(f"unable to determine if secret has rbac refs: {err}") from err

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[%s] secret %s owns roles: %s and roleBindings %s",
                LOG_PREFIX,
                secret.name,
                [role.metadata.name for role in roles],
                [binding.metadata.name for binding in role_bindings],
            )

        if not roles and not role_bindings:
            return response_allowed()
        return response_bad_request(
            "A secret which owns RBAC objects cannot be deleted with OrphanDependents: true "
            "or PropagationPolicy: Orphan"
        )

    def _rbac_refs(self, secret: _Secret) -> tuple[list[Role], list[RoleBinding]]:
        key = _owner_key(secret.namespace, secret.name)
        roles = self.role_cache.get_by_index(ROLE_OWNER_INDEX, key)
        role_bindings = self.role_binding_cache.get_by_index(ROLE_BINDING_OWNER_INDEX, key)
        return list(roles or []), list(role_bindings or [])


class Validator:
    """Validates secret deletions so owned RBAC objects are not orphaned."""

    def __init__(self, role_cache: IndexedCache, role_binding_cache: IndexedCache):
        role_cache.add_indexer(ROLE_OWNER_INDEX, lambda obj: secret_owner_indexer(obj.metadata))
        role_binding_cache.add_indexer(
            ROLE_BINDING_OWNER_INDEX, lambda obj: secret_owner_indexer(obj.metadata)
        )
        self.admitter = SecretAdmitter(role_cache, role_binding_cache)

    def gvr(self) -> GroupVersionResource:
        return _GVR

    def operations(self) -> list[Operation]:
        return [Operation.DELETE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[ValidatingWebhook]:
        webhook = new_default_validating_webhook(
            self, client_config, NAMESPACED_SCOPE, self.operations()
        )
        webhook.side_effects = SIDE_EFFECT_CLASS_NONE
        return [webhook]

    def admitters(self) -> list[SecretAdmitter]:
        return [self.admitter]