"""Remediation actions and their lifecycle."""

from .lifecycle import ActionLifecycle

__all__ = ["ActionLifecycle"]
