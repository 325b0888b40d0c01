"""Admission of namespace changes: PSA labels and project membership."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from clusteradmit.admission import (
    CLUSTER_SCOPE,
    IGNORE,
    LABEL_METADATA_NAME,
    LABEL_SELECTOR_OP_IN,
    LABEL_SELECTOR_OP_NOT_IN,
    REASON_UNAUTHORIZED,
    AdmissionResponse,
    GroupVersionResource,
    LabelSelector,
    LabelSelectorRequirement,
    Operation,
    Request,
    ResourceAttributes,
    Status,
    SubjectAccessReview,
    ValidatingWebhook,
    WebhookClientConfig,
    convert_authn_extras,
    create_webhook_name,
    new_default_validating_webhook,
)
from clusteradmit.psa import is_creating_psa_config, is_updating_psa_config

PROJECTS_GVR = GroupVersionResource(group="management.cattle.io", version="v3", resource="projects")
MANAGE_NS_VERB = "manage-namespaces"
PROJECT_NS_ANNOTATION = "field.cattle.io/projectId"
UPDATE_PSA_VERB = "updatepsa"
KUBE_SYSTEM = "kube-system"


class SubjectAccessReviewer(Protocol):
    def create(self, context: Any, review: SubjectAccessReview) -> SubjectAccessReview: ...


@dataclass
class _Namespace:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


def _string_map(value: Any, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValueError(f"{what} must map strings to strings")
    return dict(value)


def _decode(raw: bytes) -> _Namespace:
    data = json.loads(raw)
    if data is None:
        return _Namespace()
    if not isinstance(data, dict):
        raise ValueError("namespace must be a JSON object")
    metadata = data.get("metadata")
    if metadata is None:
        return _Namespace()
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be a JSON object")
    name = metadata.get("name", "")
    if not isinstance(name, str):
        raise ValueError("metadata.name must be a string")
    return _Namespace(
        name=name,
        labels=_string_map(metadata.get("labels"), "metadata.labels"),
        annotations=_string_map(metadata.get("annotations"), "metadata.annotations"),
    )


def _namespace_from_request(request: Request) -> _Namespace:
    raw = request.old_object if request.operation == Operation.DELETE else request.object
    try:
        return _decode(raw)
    except (TypeError, ValueError) as err:
        raise ValueError(f"failed to decode namespace from request: {err}") from err


def _old_and_new_from_request(request: Request) -> tuple[_Namespace, _Namespace]:
    try:
        new = _Namespace() if request.operation == Operation.DELETE else _decode(request.object)
        old = _Namespace() if request.operation == Operation.CREATE else _decode(request.old_object)
    except (TypeError, ValueError) as err:
        raise ValueError(f"failed to decode namespace from request: {err}") from err
    return old, new


def _project_review(request: Request, verb: str, name: str = "") -> SubjectAccessReview:
    user = request.user_info
    return SubjectAccessReview(
        resource_attributes=ResourceAttributes(
            verb=verb,
            group=PROJECTS_GVR.group,
            version=PROJECTS_GVR.version,
            resource=PROJECTS_GVR.resource,
            name=name,
        ),
        user=user.username,
        groups=list(user.groups),
        uid=user.uid,
        extra=convert_authn_extras(user.extra),
    )


def _unauthorized(message: str) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=False,
        result=Status(status="Failure", message=message, reason=REASON_UNAUTHORIZED, code=403),
    )


class PSALabelAdmitter:
    """Requires permission to update PSA on projects before PSA labels may change."""

    def __init__(self, sar: SubjectAccessReviewer | None):
        self.sar = sar

    def admit(self, request: Request) -> AdmissionResponse:
        if request.operation == Operation.CREATE:
            namespace = _namespace_from_request(request)
            if not is_creating_psa_config(namespace.labels):
                return AdmissionResponse(allowed=True)
        elif request.operation == Operation.UPDATE:
            old, new = _old_and_new_from_request(request)
            if not is_updating_psa_config(old.labels, new.labels):
                return AdmissionResponse(allowed=True)

        try:
            review = self.sar.create(request.context, _project_review(request, UPDATE_PSA_VERB))
        except Exception as err:
            raise RuntimeError(f"SAR request creation failed: {err}") from err

        if review.allowed:
            return AdmissionResponse(allowed=True)
        return _unauthorized(review.reason)


class ProjectNamespaceAdmitter:
    """Requires manage-namespaces on the target project to move a namespace into it."""

    def __init__(self, sar: SubjectAccessReviewer | None):
        self.sar = sar

    def admit(self, request: Request) -> AdmissionResponse:
        old, new = _old_and_new_from_request(request)

        project_value = new.annotations.get(PROJECT_NS_ANNOTATION)
        if project_value is None:
            # Not part of a project: ordinary RBAC decides.
            return AdmissionResponse(allowed=True)

        if request.operation == Operation.UPDATE:
            old_value = old.annotations.get(PROJECT_NS_ANNOTATION)
            if old_value is not None and old_value == project_value:
                return AdmissionResponse(allowed=True)

        values = project_value.split(":")
        if len(values) < 2:
            raise ValueError("unable to retrieve project id from annotation, too few values")
        project_name = values[1]

        review = self.sar.create(
            request.context, _project_review(request, MANAGE_NS_VERB, project_name)
        )
        if review.allowed:
            return AdmissionResponse(allowed=True)
        return _unauthorized(review.reason)


class Validator:
    """Validates namespace admission requests."""

    def __init__(self, sar: SubjectAccessReviewer | None):
        self.psa_admitter = PSALabelAdmitter(sar)
        self.project_namespace_admitter = ProjectNamespaceAdmitter(sar)

    def gvr(self) -> GroupVersionResource:
        return GroupVersionResource(version="v1", resource="namespaces")

    def operations(self) -> list[Operation]:
        return [Operation.UPDATE, Operation.CREATE]

    def validating_webhook(self, client_config: WebhookClientConfig) -> list[ValidatingWebhook]:
        # Namespaces are cluster scoped.
        standard = new_default_validating_webhook(
            self, client_config, CLUSTER_SCOPE, [Operation.UPDATE]
        )

        create = new_default_validating_webhook(
            self, client_config, CLUSTER_SCOPE, [Operation.CREATE]
        )
        create.name = create_webhook_name(self, "create-non-kubesystem")
        create.namespace_selector = LabelSelector(
            match_expressions=[
                LabelSelectorRequirement(
                    key=LABEL_METADATA_NAME, operator=LABEL_SELECTOR_OP_NOT_IN, values=[KUBE_SYSTEM]
                )
            ]
        )

        # Creation in kube-system may proceed while the webhook is unavailable.
        kube_system_create = new_default_validating_webhook(
            self, client_config, CLUSTER_SCOPE, [Operation.CREATE]
        )
        kube_system_create.name = create_webhook_name(self, "create-kubesystem-only")
        kube_system_create.namespace_selector = LabelSelector(
            match_expressions=[
                LabelSelectorRequirement(
                    key=LABEL_METADATA_NAME, operator=LABEL_SELECTOR_OP_IN, values=[KUBE_SYSTEM]
                )
            ]
        )
        kube_system_create.failure_policy = IGNORE

        return [standard, create, kube_system_create]

    def admitters(self) -> list[PSALabelAdmitter | ProjectNamespaceAdmitter]:
        return [self.psa_admitter, self.project_namespace_admitter]