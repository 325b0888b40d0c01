"""Core admission types and the helpers shared by every admitter."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Protocol

CREATOR_ID_ANN = "field.cattle.io/creatorId"

CLUSTER_SCOPE = "Cluster"
NAMESPACED_SCOPE = "Namespaced"

FAIL = "Fail"
IGNORE = "Ignore"

SIDE_EFFECT_CLASS_NONE = "None"
SIDE_EFFECT_CLASS_NONE_ON_DRY_RUN = "NoneOnDryRun"

LABEL_SELECTOR_OP_IN = "In"
LABEL_SELECTOR_OP_NOT_IN = "NotIn"
LABEL_METADATA_NAME = "kubernetes.io/metadata.name"

REASON_INVALID = "Invalid"
REASON_BAD_REQUEST = "BadRequest"
REASON_UNAUTHORIZED = "Unauthorized"

JSON_PATCH = "JSONPatch"

_WEBHOOK_NAME_PREFIX = "rancher.cattle.io"


class Operation(str, Enum):
    """Admission operation types."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


@dataclass(frozen=True)
class GroupVersionResource:
    group: str = ""
    version: str = ""
    resource: str = ""


@dataclass
class UserInfo:
    username: str = ""
    uid: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Request:
    """An admission request; object payloads are raw JSON bytes."""

    operation: Operation
    user_info: UserInfo = field(default_factory=UserInfo)
    object: bytes = b""
    old_object: bytes = b""
    options: bytes = b""
    name: str = ""
    namespace: str = ""
    dry_run: bool | None = None
    context: Any = None


@dataclass
class Status:
    status: str = ""
    message: str = ""
    reason: str = ""
    code: int = 0


@dataclass
class AdmissionResponse:
    allowed: bool = False
    result: Status | None = None
    patch: bytes | None = None
    patch_type: str | None = None


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
    """A subject access review: the spec to check and the decision returned."""

    resource_attributes: ResourceAttributes = field(default_factory=ResourceAttributes)
    user: str = ""
    groups: list[str] = field(default_factory=list)
    uid: str = ""
    extra: dict[str, list[str]] = field(default_factory=dict)
    allowed: bool = False
    reason: str = ""


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, resource: str, name: str):
        self.resource = resource
        self.name = name
        super().__init__(f'{resource} "{name}" not found')


@dataclass
class WebhookClientConfig:
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
class LabelSelector:
    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)


@dataclass
class RuleWithOperations:
    operations: list[Operation] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    api_versions: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    scope: str | None = None


@dataclass
class _Webhook:
    name: str
    client_config: WebhookClientConfig
    rules: list[RuleWithOperations] = field(default_factory=list)
    failure_policy: str | None = FAIL
    side_effects: str = SIDE_EFFECT_CLASS_NONE
    match_policy: str = "Equivalent"
    namespace_selector: LabelSelector | None = None
    object_selector: LabelSelector | None = None
    timeout_seconds: int | None = None
    admission_review_versions: list[str] = field(default_factory=lambda: ["v1", "v1beta1"])


@dataclass
class ValidatingWebhook(_Webhook):
    pass


@dataclass
class MutatingWebhook(_Webhook):
    reinvocation_policy: str = "Never"


class _Handler(Protocol):
    def gvr(self) -> GroupVersionResource: ...


def response_allowed() -> AdmissionResponse:
    """Return a response that admits the request."""
    return AdmissionResponse(allowed=True)


def response_bad_request(message: str) -> AdmissionResponse:
    """Return a denying response carrying a bad-request status."""
    return AdmissionResponse(
        allowed=False,
        result=Status(status="Failure", message=message, reason=REASON_BAD_REQUEST, code=400),
    )


def convert_authn_extras(extra: Mapping[str, list[str]] | None) -> dict[str, list[str]]:
    """Copy authentication extras into the form a subject access review takes."""
    return {key: list(values) for key, values in (extra or {}).items()}


def _annotations(obj: Mapping[str, Any] | None) -> dict[str, str]:
    if not obj:
        return {}
    return (obj.get("metadata") or {}).get("annotations") or {}


def check_creator_id(
    request: Request, old_obj: Mapping[str, Any] | None, new_obj: Mapping[str, Any]
) -> Status | None:
    """Return a failure status if the creator-id annotation is set or changed illegally."""
    new_annotations = _annotations(new_obj)

    def failure(message: str) -> Status:
        return Status(status="Failure", message=message, reason=REASON_INVALID, code=422)

    if request.operation == Operation.CREATE:
        if new_annotations.get(CREATOR_ID_ANN, "") != request.user_info.username:
            return failure("creatorID annotation does not match user")
        return None

    # Removing the annotation is the only permitted change on update.
    if CREATOR_ID_ANN not in new_annotations:
        return None

    if _annotations(old_obj).get(CREATOR_ID_ANN, "") != new_annotations[CREATOR_ID_ANN]:
        return failure("creatorID annotation cannot be changed")
    return None


def set_creator_id_annotation(
    request: Request, response: AdmissionResponse, raw: bytes, new_obj: dict[str, Any]
) -> None:
    """Annotate new_obj with the requesting user and patch the response accordingly."""
    metadata = new_obj.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[CREATOR_ID_ANN] = request.user_info.username
    metadata["annotations"] = annotations
    try:
        create_patch(raw, new_obj, response)
    except ValueError as err:
        raise ValueError(f"failed to create patch: {err}") from err


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _same(old: Any, new: Any) -> bool:
    return type(old) is type(new) and old == new


def _diff(old: Any, new: Any, path: str, ops: list[dict[str, Any]]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                ops.append({"op": "remove", "path": f"{path}/{_escape(key)}"})
        for key, value in new.items():
            child = f"{path}/{_escape(key)}"
            if key in old:
                _diff(old[key], value, child, ops)
            else:
                ops.append({"op": "add", "path": child, "value": value})
    elif not _same(old, new):
        ops.append({"op": "replace", "path": path, "value": new})


def create_patch(raw: bytes, new_obj: Any, response: AdmissionResponse) -> None:
    """Store on response the JSON patch that turns raw into new_obj."""
    try:
        original = json.loads(raw)
    except (TypeError, ValueError) as err:
        raise ValueError(f"unable to decode original object: {err}") from err
    try:
        target = json.loads(json.dumps(new_obj))
    except (TypeError, ValueError) as err:
        raise ValueError(f"unable to encode new object: {err}") from err
    ops: list[dict[str, Any]] = []
    _diff(original, target, "", ops)
    response.patch = json.dumps(ops).encode()
    response.patch_type = JSON_PATCH


def _base_name(gvr: GroupVersionResource) -> str:
    name = f"{_WEBHOOK_NAME_PREFIX}.{gvr.resource}"
    return f"{name}.{gvr.group}" if gvr.group else name


def create_webhook_name(handler: _Handler, suffix: str) -> str:
    """Return a webhook name for handler distinguished by suffix."""
    return f"{_base_name(handler.gvr())}.{suffix}"


def _webhook_parts(
    handler: _Handler, client_config: WebhookClientConfig, scope: str, operations: list[Operation]
) -> tuple[str, WebhookClientConfig, list[RuleWithOperations]]:
    gvr = handler.gvr()
    path = gvr.resource
    config = replace(copy.deepcopy(client_config))
    if config.url is not None:
        config.url = f"{config.url}/{path}"
    if config.service_name is not None:
        config.service_path = f"/{path}"
    rule = RuleWithOperations(
        operations=list(operations),
        api_groups=[gvr.group],
        api_versions=[gvr.version],
        resources=[gvr.resource],
        scope=scope,
    )
    return _base_name(gvr), config, [rule]


def new_default_validating_webhook(
    handler: _Handler, client_config: WebhookClientConfig, scope: str, operations: list[Operation]
) -> ValidatingWebhook:
    """Build a validating webhook with default settings for handler."""
    name, config, rules = _webhook_parts(handler, client_config, scope, operations)
    return ValidatingWebhook(name=name, client_config=config, rules=rules)


def new_default_mutating_webhook(
    handler: _Handler, client_config: WebhookClientConfig, scope: str, operations: list[Operation]
) -> MutatingWebhook:
    """Build a mutating webhook with default settings for handler."""
    name, config, rules = _webhook_parts(handler, client_config, scope, operations)
    return MutatingWebhook(name=name, client_config=config, rules=rules)