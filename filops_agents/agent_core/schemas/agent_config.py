"""
Kind-specific agent configuration.

Each agent kind carries its own configuration variant, distinguished by the
``kind`` tag. Configuration is validated and defaulted eagerly when the agent
is registered, so the rest of the system only ever sees typed values.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ...core.errors import ValidationFailedError
from .base import BaseSchema


class _AgentConfigBase(BaseSchema):
    check_interval_seconds: float = Field(default=60.0, ge=1.0)
    auto_execute: bool = False
    max_actions_per_run: int = Field(default=10, ge=1)


class ReplicaBalanceConfig(_AgentConfigBase):
    kind: Literal["RBA"] = "RBA"


class PredictiveRenewalConfig(_AgentConfigBase):
    kind: Literal["PRA"] = "PRA"
    lead_time_days: int = Field(default=14, ge=1)


class PricingArbitrageConfig(_AgentConfigBase):
    kind: Literal["PAA"] = "PAA"
    min_savings_pct: float = Field(default=10.0, ge=0)


AgentConfig = Annotated[
    Union[ReplicaBalanceConfig, PredictiveRenewalConfig, PricingArbitrageConfig],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[AgentConfig] = TypeAdapter(AgentConfig)


def parse_agent_config(kind: Any, raw: Optional[Mapping[str, Any]] = None) -> AgentConfig:
    """
    Validate and default a configuration payload for the given agent kind.

    Args:
        kind: Agent kind tag (``RBA``, ``PRA`` or ``PAA``).
        raw: Raw configuration values; ``None`` yields all defaults.

    Returns:
        The typed configuration variant.

    Raises:
        ValidationFailedError: If the payload is invalid or names another kind.
    """
    kind = _tag(kind)
    payload: Dict[str, Any] = dict(raw or {})
    declared = payload.get("kind")
    if declared is not None and _tag(declared) != kind:
        raise ValidationFailedError(
            f"config kind {declared!r} does not match agent kind {kind!r}",
            details={"kind": kind, "config_kind": declared},
        )
    payload["kind"] = kind
    try:
        return _adapter.validate_python(payload)
    except ValidationError as exc:
        raise ValidationFailedError(
            f"invalid configuration for agent kind {kind!r}",
            details={"errors": [_format_error(e) for e in exc.errors()]},
        ) from exc


def _tag(value: Any) -> str:
    return str(getattr(value, "value", value))


def _format_error(err: Mapping[str, Any]) -> str:
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))
