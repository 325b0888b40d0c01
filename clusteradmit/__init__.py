"""Admission rules for namespaces and secrets, and RBAC rule resolution from role template bindings."""

__version__ = "0.1.0"

__all__ = ["admission", "psa", "resolvers", "bindings", "namespace", "secret"]