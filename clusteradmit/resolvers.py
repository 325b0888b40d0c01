"""Policy rules, rule accumulation and resolvers that combine other resolvers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

Visitor = Callable[[Any, "PolicyRule | None", "BaseException | None"], bool]


@dataclass
class PolicyRule:
    verbs: list[str] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(default_factory=list)
    non_resource_urls: list[str] = field(default_factory=list)


@dataclass
class RoleRef:
    api_group: str = ""
    kind: str = ""
    name: str = ""


class ResolutionError(Exception):
    """One or more errors met while resolving rules; holds the rules found anyway."""

    def __init__(self, errors: Iterable[BaseException], rules: Iterable[PolicyRule] = ()):
        self.errors = list(errors)
        self.rules = list(rules)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(err) for err in self.errors) + "]"
        super().__init__(message)


class RuleAccumulator:
    """Collects every visited rule and error."""

    def __init__(self) -> None:
        self.rules: list[PolicyRule] = []
        self.errors: list[BaseException] = []

    def visit(self, source: Any, rule: PolicyRule | None, err: BaseException | None) -> bool:
        if rule is not None:
            self.rules.append(rule)
        if err is not None:
            self.errors.append(err)
        return True

    def error(self) -> ResolutionError | None:
        """Combine the recorded errors, or return None if there were none."""
        if not self.errors:
            return None
        return ResolutionError(self.errors, self.rules)


class RuleResolver(Protocol):
    def get_role_reference_rules(self, role_ref: RoleRef, namespace: str) -> list[PolicyRule]: ...

    def visit_rules_for(self, user: Any, namespace: str, visitor: Visitor) -> None: ...


def visit_rules(
    source: Any,
    rules: Iterable[PolicyRule] | None,
    err: BaseException | None,
    visitor: Visitor,
) -> bool:
    """Pass err and then each rule to visitor; return False once visitor does."""
    if not visitor(source, None, err):
        return False
    for rule in rules or ():
        if not visitor(source, rule, None):
            return False
    return True


def get_user_key(user_name: str, namespace: str) -> str:
    """Index key for a user in a namespace."""
    return f"user:{user_name}-{namespace}"


def get_group_key(group_name: str, namespace: str) -> str:
    """Index key for a group in a namespace."""
    return f"group:{group_name}-{namespace}"


def collect_rules(resolver: Any, user: Any, namespace: str) -> list[PolicyRule]:
    """Gather all rules resolver grants user, raising ResolutionError with partial rules."""
    accumulator = RuleAccumulator()
    resolver.visit_rules_for(user, namespace, accumulator.visit)
    error = accumulator.error()
    if error is not None:
        raise error
    return accumulator.rules


class AggregateRuleResolver:
    """Combines the output of several rule resolvers."""

    def __init__(self, *resolvers: RuleResolver):
        self.resolvers = list(resolvers)

    def get_role_reference_rules(self, role_ref: RoleRef, namespace: str) -> list[PolicyRule]:
        accumulator = RuleAccumulator()
        for resolver in self.resolvers:
            try:
                rules, err = resolver.get_role_reference_rules(role_ref, namespace), None
            except Exception as exc:
                rules, err = getattr(exc, "rules", []), exc
            visit_rules(None, rules, err, accumulator.visit)
        error = accumulator.error()
        if error is not None:
            raise error
        return accumulator.rules

    def rules_for(self, user: Any, namespace: str) -> list[PolicyRule]:
        """Return every rule for user; on errors raise ResolutionError holding the partial rules."""
        return collect_rules(self, user, namespace)

    def visit_rules_for(self, user: Any, namespace: str, visitor: Visitor) -> None:
        for resolver in self.resolvers:
            resolver.visit_rules_for(user, namespace, visitor)