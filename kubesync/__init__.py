"""Phased, wave-ordered synchronisation of Kubernetes-style resources with hooks and pruning."""

__version__ = "0.1.0"

__all__ = [
    "annotations",
    "common",
    "context",
    "executor",
    "helm",
    "hooks",
    "operations",
    "reconcile",
    "tasks",
]