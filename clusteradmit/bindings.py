"""Rule resolvers for cluster and project role template bindings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

from clusteradmit.resolvers import (
    PolicyRule,
    RoleRef,
    Visitor,
    collect_rules,
    get_group_key,
    get_user_key,
    visit_rules,
)

CRTB_SUBJECT_INDEX = "management.cattle.io/crtb-by-subject"
PRTB_SUBJECT_INDEX = "management.cattle.io/prtb-by-subject"


@dataclass
class ClusterRoleTemplateBinding:
    name: str = ""
    namespace: str = ""
    cluster_name: str = ""
    user_name: str = ""
    group_name: str = ""
    group_principal_name: str = ""
    role_template_name: str = ""


@dataclass
class ProjectRoleTemplateBinding:
    name: str = ""
    namespace: str = ""
    project_name: str = ""
    user_name: str = ""
    group_name: str = ""
    group_principal_name: str = ""
    role_template_name: str = ""


class IndexedCache(Protocol):
    def add_indexer(self, name: str, indexer: Callable[[Any], list[str]]) -> None: ...

    def get_by_index(self, name: str, key: str) -> list[Any]: ...


class RoleTemplateResolver(Protocol):
    def rules_from_template_name(self, name: str) -> list[PolicyRule]: ...


def _subject_keys(binding: Any, namespace: str) -> list[str]:
    if binding.user_name:
        return [get_user_key(binding.user_name, namespace)]
    if binding.group_name:
        return [get_group_key(binding.group_name, namespace)]
    if binding.group_principal_name:
        return [get_group_key(binding.group_principal_name, namespace)]
    return []


def crtb_by_subject(crtb: ClusterRoleTemplateBinding) -> list[str]:
    """Index keys for a cluster role template binding."""
    return _subject_keys(crtb, crtb.cluster_name)


def namespace_from_project(project_name: str) -> str | None:
    """Return the namespace part of "cluster:project", or None if the name has another shape."""
    pieces = project_name.split(":")
    if len(pieces) != 2:
        return None
    return pieces[1]


def prtb_by_subject(prtb: ProjectRoleTemplateBinding) -> list[str]:
    """Index keys for a project role template binding."""
    namespace = namespace_from_project(prtb.project_name)
    if namespace is None:
        return []
    return _subject_keys(prtb, namespace)


def _visit_bindings(
    role_template_resolver: RoleTemplateResolver, bindings: Iterable[Any], visitor: Visitor
) -> bool:
    for binding in bindings:
        try:
            rules = role_template_resolver.rules_from_template_name(binding.role_template_name)
            err = None
        except Exception as exc:
            rules, err = getattr(exc, "rules", []), exc
        if not visit_rules(None, rules, err, visitor):
            return False
    return True


def _visit_subject_rules(
    cache: IndexedCache,
    index: str,
    role_template_resolver: RoleTemplateResolver,
    user: Any,
    namespace: str,
    visitor: Visitor,
) -> None:
    for group in user.groups or ():
        try:
            found = cache.get_by_index(index, get_group_key(group, namespace))
        except Exception as exc:
            visitor(None, None, exc)
            continue
        if not _visit_bindings(role_template_resolver, found, visitor):
            return

    try:
        found = cache.get_by_index(index, get_user_key(user.username, namespace))
    except Exception as exc:
        visitor(None, None, exc)
        return
    _visit_bindings(role_template_resolver, found, visitor)


class CRTBRuleResolver:
    """Resolves rules granted through cluster role template bindings."""

    def __init__(self, bindings: IndexedCache, role_template_resolver: RoleTemplateResolver):
        bindings.add_indexer(CRTB_SUBJECT_INDEX, crtb_by_subject)
        self.bindings = bindings
        self.role_template_resolver = role_template_resolver

    def get_role_reference_rules(self, role_ref: RoleRef, namespace: str) -> list[PolicyRule]:
        """Role references never point at role templates, so there is nothing to return."""
        return []

    def rules_for(self, user: Any, namespace: str) -> list[PolicyRule]:
        """Return every rule for user; on errors raise ResolutionError holding the partial rules."""
        return collect_rules(self, user, namespace)

    def visit_rules_for(self, user: Any, namespace: str, visitor: Visitor) -> None:
        """Call visitor with each rule and error; stop when it returns False."""
        _visit_subject_rules(
            self.bindings, CRTB_SUBJECT_INDEX, self.role_template_resolver, user, namespace, visitor
        )


class PRTBRuleResolver:
    """Resolves rules granted through project role template bindings."""

    def __init__(self, bindings: IndexedCache, role_template_resolver: RoleTemplateResolver):
        bindings.add_indexer(PRTB_SUBJECT_INDEX, prtb_by_subject)
        self.bindings = bindings
        self.role_template_resolver = role_template_resolver

    def get_role_reference_rules(self, role_ref: RoleRef, namespace: str) -> list[PolicyRule]:
        """Role references never point at role templates, so there is nothing to return."""
        return []

    def rules_for(self, user: Any, namespace: str) -> list[PolicyRule]:
        """Return every rule for user; on errors raise ResolutionError holding the partial rules."""
        return collect_rules(self, user, namespace)

    def visit_rules_for(self, user: Any, namespace: str, visitor: Visitor) -> None:
        """Call visitor with each rule and error; stop when it returns False."""
        _visit_subject_rules(
            self.bindings, PRTB_SUBJECT_INDEX, self.role_template_resolver, user, namespace, visitor
        )