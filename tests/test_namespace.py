import json

import pytest

from clusteradmit.admission import (
    CLUSTER_SCOPE,
    FAIL,
    IGNORE,
    LABEL_METADATA_NAME,
    LABEL_SELECTOR_OP_IN,
    LABEL_SELECTOR_OP_NOT_IN,
    Operation,
    Request,
    SubjectAccessReview,
    UserInfo,
    WebhookClientConfig,
)
from clusteradmit.namespace import (
    MANAGE_NS_VERB,
    PROJECT_NS_ANNOTATION,
    PROJECTS_GVR,
    UPDATE_PSA_VERB,
    ProjectNamespaceAdmitter,
    PSALabelAdmitter,
    Validator,
)
from clusteradmit.psa import (
    AUDIT_LABEL,
    AUDIT_VERSION_LABEL,
    ENFORCE_LABEL,
    ENFORCE_VERSION_LABEL,
    WARN_LABEL,
    WARN_VERSION_LABEL,
)


class SARUnavailable(ConnectionError):
    pass


class ProjectReviewer:
    def __init__(self, target_project, can_access, error):
        self.target_project = target_project
        self.can_access = can_access
        self.error = error
        self.reviews = []

    def create(self, context, review: SubjectAccessReview):
        self.reviews.append(review)
        attrs = review.resource_attributes
        for_project = (
            attrs.group == PROJECTS_GVR.group
            and attrs.version == PROJECTS_GVR.version
            and attrs.resource == PROJECTS_GVR.resource
        )
        if for_project and attrs.verb == MANAGE_NS_VERB and attrs.name == self.target_project:
            if self.error:
                raise SARUnavailable("error when creating sar, server unavailable")
            review.allowed = self.can_access
        return review


FAIL_SAR_USER = "nonadminuser"
ALLOW_SAR_USER = "adminuser"
SAR_ERROR_USER = "sarerroruser"


class PSAReviewer:
    def __init__(self):
        self.reviews = []

    def create(self, context, review: SubjectAccessReview):
        self.reviews.append(review)
        if review.user == FAIL_SAR_USER:
            review.allowed = False
            review.reason = f"Can not update project PSA for: {review.user}"
            return review
        if review.user == SAR_ERROR_USER:
            raise SARUnavailable(f"SAR creation failed for user {review.user}")
        review.allowed = True
        return review


def namespace_doc(labels=None, annotations=None, name="test-ns", **extra_meta):
    meta = {"name": name}
    if labels is not None:
        meta["labels"] = labels
    if annotations is not None:
        meta["annotations"] = annotations
    meta.update(extra_meta)
    return {"metadata": meta}


def annotation_request(new_value, old_value, include, operation):
    annotations = {PROJECT_NS_ANNOTATION: new_value} if include else None
    request = Request(
        operation=operation,
        user_info=UserInfo(username="test-user"),
        name="test-ns",
        object=json.dumps(namespace_doc(annotations=annotations)).encode(),
    )
    if operation == Operation.UPDATE:
        old_annotations = {PROJECT_NS_ANNOTATION: old_value} if include else None
        request.old_object = json.dumps(namespace_doc(annotations=old_annotations)).encode()
    return request


PROJECT_CASES = [
    # name, op, new, old, include, target, can_access, sar_error, want_error, want_allowed
    ("user can access, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, "p-123xyz", True, False, False, True),
    ("user can access, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, "p-123xyz", True, False, False, True),
    ("user isn't modifying projectID, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123xyz:p-123xyz", True, "p-123xyz", False, False, False, True),
    ("user can't access, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, "p-123xyz", False, False, False, False),
    ("user can't access, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, "p-123xyz", False, False, False, False),
    ("no annotation, create", Operation.CREATE, "", "", False, "p-123xyz", False, False, False, True),
    ("no annotation, update", Operation.UPDATE, "", "", False, "p-123xyz", False, False, False, True),
    ("invalid annotation, create", Operation.CREATE, "not-valid-project", "", True, "p-123xyz", False, False, True, False),
    ("invalid annotation, update", Operation.UPDATE, "not-valid-project", "c-123abc:p-123abc", True, "p-123xyz", False, False, True, False),
    ("empty annotation, create", Operation.CREATE, "", "", True, "p-123xyz", False, False, True, False),
    ("empty annotation, update", Operation.UPDATE, "", "c-123abc:p-123abc", True, "p-123xyz", False, False, True, False),
    ("empty old annotation, update", Operation.UPDATE, "c-123xyz:p-123xyz", "", True, "p-123xyz", False, False, False, False),
    ("sar error, create", Operation.CREATE, "c-123xyz:p-123xyz", "", True, "p-123xyz", False, True, True, False),
    ("sar error, update", Operation.UPDATE, "c-123xyz:p-123xyz", "c-123abc:p-123abc", True, "p-123xyz", False, True, True, False),
]


@pytest.mark.parametrize(
    "name,operation,new_value,old_value,include,target,can_access,sar_error,want_error,want_allowed",
    PROJECT_CASES,
    ids=[case[0] for case in PROJECT_CASES],
)
def test_project_namespace_annotations(
    name, operation, new_value, old_value, include, target, can_access, sar_error, want_error, want_allowed
):
    admitter = ProjectNamespaceAdmitter(ProjectReviewer(target, can_access, sar_error))
    request = annotation_request(new_value, old_value, include, operation)
    if want_error:
        with pytest.raises((ValueError, SARUnavailable)):
            admitter.admit(request)
    else:
        assert admitter.admit(request).allowed is want_allowed


def test_project_annotation_invalid_value_raises_value_error():
    admitter = ProjectNamespaceAdmitter(ProjectReviewer("p-123xyz", True, False))
    request = annotation_request("not-valid-project", "", True, Operation.CREATE)
    with pytest.raises(ValueError, match="too few values"):
        admitter.admit(request)


def test_project_annotation_sar_error_propagates():
    admitter = ProjectNamespaceAdmitter(ProjectReviewer("p-123xyz", False, True))
    request = annotation_request("c-123xyz:p-123xyz", "", True, Operation.CREATE)
    with pytest.raises(SARUnavailable):
        admitter.admit(request)


def test_project_annotation_review_spec_and_denial():
    reviewer = ProjectReviewer("p-123xyz", False, False)
    admitter = ProjectNamespaceAdmitter(reviewer)
    request = annotation_request("c-123xyz:p-123xyz", "", True, Operation.CREATE)
    request.user_info = UserInfo(username="test-user", uid="uid-1", groups=["g1"], extra={"k": ["v"]})
    response = admitter.admit(request)
    assert response.allowed is False
    assert response.result.code == 403
    assert response.result.reason == "Unauthorized"
    assert response.result.status == "Failure"
    review = reviewer.reviews[0]
    assert review.resource_attributes.verb == "manage-namespaces"
    assert review.resource_attributes.name == "p-123xyz"
    assert review.resource_attributes.group == "management.cattle.io"
    assert review.user == "test-user"
    assert review.groups == ["g1"]
    assert review.uid == "uid-1"
    assert review.extra == {"k": ["v"]}


def test_project_annotation_decode_error():
    admitter = ProjectNamespaceAdmitter(ProjectReviewer("p-123xyz", True, False))
    request = Request(operation=Operation.CREATE, object=b"not json")
    with pytest.raises(ValueError, match="failed to decode namespace"):
        admitter.admit(request)


def psa_request(user, operation, labels, old_labels=None, annotations=None, **extra_meta):
    request = Request(
        operation=operation,
        user_info=UserInfo(username=user),
        name="anynamespace",
        object=json.dumps(
            namespace_doc(labels=labels, annotations=annotations, name="anynamespace", **extra_meta)
        ).encode(),
    )
    if operation == Operation.UPDATE:
        request.old_object = json.dumps(
            namespace_doc(labels=old_labels, name="anynamespace")
        ).encode()
    return request


ALL_PSA = {
    ENFORCE_LABEL: "baseline",
    WARN_LABEL: "baseline",
    AUDIT_LABEL: "baseline",
    AUDIT_VERSION_LABEL: "restricted",
    WARN_VERSION_LABEL: "restricted",
    ENFORCE_VERSION_LABEL: "restricted",
    "randomkey": "randomvalue",
}

PSA_CASES = [
    ("update PSA admin allowed", ALLOW_SAR_USER, Operation.UPDATE, {ENFORCE_LABEL: "baseline"}, {}, {}, False, True),
    ("update non PSA for non admin allowed", FAIL_SAR_USER, Operation.UPDATE,
     {"someotherlabelkey": "somevalue", ENFORCE_LABEL: "baseline"}, {ENFORCE_LABEL: "baseline"}, {}, False, True),
    ("update PSA non admin denied", FAIL_SAR_USER, Operation.UPDATE, {ENFORCE_LABEL: "baseline"}, {}, {}, False, False),
    ("update multiple PSA allowed user", ALLOW_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline", WARN_LABEL: "baseline", AUDIT_LABEL: "baseline"}, {}, {}, False, True),
    ("update multiple PSA and non PSA allowed user", ALLOW_SAR_USER, Operation.UPDATE,
     ALL_PSA, {}, {"annotations": {"annotationkey": "annotationlabel"}}, False, True),
    ("update multiple PSA and non PSA non allowed user", FAIL_SAR_USER, Operation.UPDATE,
     {ENFORCE_LABEL: "baseline", WARN_LABEL: "baseline", AUDIT_LABEL: "baseline", "randomkey": "randomvalue"},
     {}, {"annotations": {"annotationkey": "annotationlabel"}}, False, False),
    ("update unrelated to PSA", ALLOW_SAR_USER, Operation.UPDATE, {"randomkey": "randomvalue"}, {},
     {"annotations": {"annotationkey": "annotationlabel"}, "generateName": "abcde"}, False, True),
    ("SAR create failed for update", SAR_ERROR_USER, Operation.UPDATE, {ENFORCE_LABEL: "baseline"}, {},
     {"generateName": "abcde"}, True, True),
    ("create with PSA admin allowed", ALLOW_SAR_USER, Operation.CREATE, {ENFORCE_LABEL: "baseline"}, None, {}, False, True),
    ("create with PSA not permitted", FAIL_SAR_USER, Operation.CREATE, {ENFORCE_LABEL: "baseline"}, None, {}, False, False),
    ("remove PSA non admin denied", FAIL_SAR_USER, Operation.UPDATE, {}, {ENFORCE_LABEL: "baseline"}, {}, False, False),
    ("remove PSA admin allowed", ALLOW_SAR_USER, Operation.UPDATE, {}, {ENFORCE_LABEL: "baseline"}, {}, False, True),
]


@pytest.mark.parametrize(
    "name,user,operation,labels,old_labels,meta,want_err,allowed",
    PSA_CASES,
    ids=[case[0] for case in PSA_CASES],
)
def test_validate_psa_labels(name, user, operation, labels, old_labels, meta, want_err, allowed):
    admitter = PSALabelAdmitter(PSAReviewer())
    annotations = meta.get("annotations")
    extra = {k: v for k, v in meta.items() if k != "annotations"}
    request = psa_request(user, operation, labels, old_labels, annotations, **extra)
    if want_err:
        with pytest.raises(RuntimeError, match="SAR request creation failed"):
            admitter.admit(request)
    else:
        assert admitter.admit(request).allowed is allowed


def test_psa_denial_carries_reason_and_review_spec():
    reviewer = PSAReviewer()
    admitter = PSALabelAdmitter(reviewer)
    response = admitter.admit(psa_request(FAIL_SAR_USER, Operation.CREATE, {ENFORCE_LABEL: "baseline"}))
    assert response.allowed is False
    assert response.result.message == "Can not update project PSA for: nonadminuser"
    assert response.result.code == 403
    attrs = reviewer.reviews[0].resource_attributes
    assert attrs.verb == UPDATE_PSA_VERB == "updatepsa"
    assert (attrs.group, attrs.version, attrs.resource) == ("management.cattle.io", "v3", "projects")
    assert attrs.name == ""


def test_psa_no_review_when_labels_untouched():
    reviewer = PSAReviewer()
    admitter = PSALabelAdmitter(reviewer)
    response = admitter.admit(psa_request(FAIL_SAR_USER, Operation.CREATE, {"a": "b"}))
    assert response.allowed is True
    assert reviewer.reviews == []


def test_psa_decode_error():
    admitter = PSALabelAdmitter(PSAReviewer())
    request = Request(operation=Operation.UPDATE, object=b"[1]", old_object=b"{}")
    with pytest.raises(ValueError, match="failed to decode namespace"):
        admitter.admit(request)


def test_gvr():
    gvr = Validator(None).gvr()
    assert gvr.version == "v1"
    assert gvr.resource == "namespaces"
    assert gvr.group == ""


def test_operations():
    operations = Validator(None).operations()
    assert len(operations) == 2
    assert Operation.UPDATE in operations
    assert Operation.CREATE in operations


def test_admitters():
    admitters = Validator(None).admitters()
    assert len(admitters) == 2
    assert sum(isinstance(a, PSALabelAdmitter) for a in admitters) == 1
    assert sum(isinstance(a, ProjectNamespaceAdmitter) for a in admitters) == 1


def test_validating_webhook():
    webhooks = Validator(None).validating_webhook(WebhookClientConfig(url="test.cattle.io"))
    assert len(webhooks) == 3
    has_update = has_create_non_kube = has_create_kube = False
    for webhook in webhooks:
        assert webhook.client_config.url == "test.cattle.io/namespaces"
        assert len(webhook.rules) == 1
        rule = webhook.rules[0]
        assert len(rule.operations) == 1
        operation = rule.operations[0]
        assert rule.scope == CLUSTER_SCOPE
        assert operation in (Operation.CREATE, Operation.UPDATE)
        if operation == Operation.UPDATE:
            assert not has_update
            has_update = True
            assert webhook.namespace_selector is None
            assert webhook.object_selector is None
            assert webhook.failure_policy in (None, FAIL)
        else:
            assert webhook.namespace_selector is not None
            expressions = webhook.namespace_selector.match_expressions
            assert len(expressions) == 1
            expression = expressions[0]
            assert expression.values == ["kube-system"]
            assert expression.key == LABEL_METADATA_NAME
            assert expression.operator in (LABEL_SELECTOR_OP_IN, LABEL_SELECTOR_OP_NOT_IN)
            if expression.operator == LABEL_SELECTOR_OP_IN:
                assert not has_create_kube
                has_create_kube = True
                assert webhook.failure_policy == IGNORE
                assert webhook.name.endswith("create-kubesystem-only")
            else:
                assert not has_create_non_kube
                has_create_non_kube = True
                assert webhook.failure_policy in (None, FAIL)
                assert webhook.name.endswith("create-non-kubesystem")
    assert has_update and has_create_kube and has_create_non_kube
    assert len({w.name for w in webhooks}) == 3