"""Error taxonomy for the agent core.

Purpose:
- Give every failure surfaced by the core a typed exception with a stable
  machine-readable ``code``.
- Keep the propagation policy explicit: ``NotFoundError``,
  ``InvalidStateError``, ``ValidationFailedError`` and ``ConflictDetectedError``
  are raised to the caller of the triggering operation, while
  ``CollaboratorFailure`` raised inside a scheduled compliance tick is caught
  at the tick boundary and recorded as an agent error.

Usage:
- Catch ``FilOpsError`` for any core failure and inspect ``code`` or
  ``details``.
- Catch the narrower classes when the caller can react to one condition,
  e.g. ``AgentNotPausedError`` on resume.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FilOpsError(Exception):
    """Base error for all agent-core failures.

    Args:
        message: Human-readable error description.
        code: Stable machine-readable error code.
        details: Optional structured context for diagnosis.
    """

    default_code = "FILOPS_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})


class NotFoundError(FilOpsError):
    """A referenced policy, agent or action does not exist."""

    default_code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str, *, code: Optional[str] = None) -> None:
        super().__init__(f"{resource} with id {resource_id} not found", code=code)
        self.resource = resource
        self.resource_id = resource_id


class PolicyNotFoundError(NotFoundError):
    def __init__(self, policy_id: str) -> None:
        super().__init__("Policy", policy_id, code="POLICY_NOT_FOUND")


class AgentNotFoundError(NotFoundError):
    def __init__(self, agent_id: str) -> None:
        super().__init__("Agent", agent_id, code="AGENT_NOT_FOUND")


class ActionNotFoundError(NotFoundError):
    def __init__(self, action_id: str) -> None:
        super().__init__("Action", action_id, code="ACTION_NOT_FOUND")


class InvalidStateError(FilOpsError):
    """An operation was attempted from a disallowed lifecycle state."""

    default_code = "INVALID_STATE"


class PolicyNotActiveError(InvalidStateError):
    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy {policy_id} is not active", code="POLICY_NOT_ACTIVE", details={"policy_id": policy_id})


class AgentNotPausedError(InvalidStateError):
    def __init__(self, agent_id: str, status: str) -> None:
        super().__init__(
            f"Agent {agent_id} is not paused (status={status})",
            code="AGENT_NOT_PAUSED",
            details={"agent_id": agent_id, "status": status},
        )


class ValidationFailedError(FilOpsError):
    """A policy document or agent configuration violates schema or hard rules."""

    default_code = "VALIDATION_ERROR"


class ConflictDetectedError(FilOpsError):
    """A hard conflict between policies, or a deletion blocked by active agents."""

    default_code = "CONFLICT"


class CollaboratorFailure(FilOpsError):
    """An external call (storage, bus, provider selection, deal execution) failed.

    Args:
        message: Human-readable error description.
        status_code: Optional HTTP status code when the collaborator is an HTTP service.
        details: Optional payload returned by the collaborator.
    """

    default_code = "COLLABORATOR_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code
