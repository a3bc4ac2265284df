"""Admission validators and mutators for namespaces, secrets, features, clusters and cluster role template bindings."""

__version__ = "0.1.0"

__all__ = ["common", "cluster", "crtb", "feature", "models", "namespace", "secret"]