"""Detection of changes to Pod Security Admission namespace labels."""

from __future__ import annotations

from typing import Mapping

ENFORCE_LABEL = "pod-security.kubernetes.io/enforce"
ENFORCE_VERSION_LABEL = "pod-security.kubernetes.io/enforce-version"
AUDIT_LABEL = "pod-security.kubernetes.io/audit"
AUDIT_VERSION_LABEL = "pod-security.kubernetes.io/audit-version"
WARN_LABEL = "pod-security.kubernetes.io/warn"
WARN_VERSION_LABEL = "pod-security.kubernetes.io/warn-version"

PSA_LABELS = (
    ENFORCE_LABEL,
    ENFORCE_VERSION_LABEL,
    AUDIT_LABEL,
    AUDIT_VERSION_LABEL,
    WARN_LABEL,
    WARN_VERSION_LABEL,
)


def is_updating_psa_config(old: Mapping[str, str] | None, new: Mapping[str, str] | None) -> bool:
    """Return True if any PSA label differs between old and new."""
    old = old or {}
    new = new or {}
    return any(old.get(label, "") != new.get(label, "") for label in PSA_LABELS)


def is_creating_psa_config(new: Mapping[str, str] | None) -> bool:
    """Return True if any PSA label is present in new."""
    return any(label in PSA_LABELS for label in (new or {}))