# src/ode_engine/config.py
"""Configuration model for building a Stepper from YAML/dict settings.

This module defines the pydantic-facing configuration object and translates it
into native ode_engine StepperConfig objects.

Notes:
    - Unknown fields are allowed and ignored (`extra="allow"`), so settings can
      live inside a larger configuration document.
    - Fixed-step methods use `step`; the adaptive method uses the tolerance and
      dt controller fields. Cross-field consistency is checked when the
      StepperConfig is resolved by the Stepper.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ode_engine.schemes import MethodName
from ode_engine.stepper import (
    AdaptiveConfig,
    DtControllerConfig,
    Stepper,
    StepperConfig,
)


class StepperSettings(BaseModel):
    """Configuration schema for a Stepper.

    This model mirrors StepperConfig fields but keeps YAML-friendly defaults
    and validation behavior.
    """

    model_config = ConfigDict(extra="allow")

    method: MethodName = Field(
        default="dormand-prince-54",
        description="Integration scheme",
    )

    step: float | None = Field(
        default=None,
        gt=0.0,
        description="Step size of fixed-step methods",
    )

    strict: bool = Field(
        default=True,
        description="Fail fast on invalid configurations",
    )

    # Adaptive stepping controls
    rtol: float = Field(default=1e-6, ge=0.0)
    atol: float = Field(default=1e-9, ge=0.0)
    dt_init: float | None = Field(default=None, gt=0.0)
    max_reject: int = Field(default=25, ge=0)
    max_steps: int = Field(default=1_000_000, ge=1)

    # dt controller controls
    dt_min: float = Field(default=0.0, ge=0.0)
    dt_max: float = Field(default=float("inf"), gt=0.0)
    safety: float = Field(default=0.9, gt=0.0)
    fac_min: float = Field(default=0.2, gt=0.0)
    fac_max: float = Field(default=10.0, gt=0.0)

    # Event truncation cap
    max_truncations: int = Field(default=16, ge=1)

    def to_stepper_config(self) -> StepperConfig:
        """Convert these settings to a native StepperConfig.

        Returns:
            Fully constructed StepperConfig instance.
        """
        adaptive_cfg = AdaptiveConfig(
            rtol=self.rtol,
            atol=self.atol,
            dt_init=self.dt_init,
            max_reject=self.max_reject,
            max_steps=self.max_steps,
        )

        dt_controller = DtControllerConfig(
            dt_min=self.dt_min,
            dt_max=self.dt_max,
            safety=self.safety,
            fac_min=self.fac_min,
            fac_max=self.fac_max,
        )

        return StepperConfig(
            method=self.method,
            step=self.step,
            strict=self.strict,
            dt_controller=dt_controller,
            adaptive_cfg=adaptive_cfg,
            max_truncations=self.max_truncations,
        )

    def build_stepper(self) -> Stepper:
        """Build a Stepper from these settings.

        Returns:
            Configured Stepper.
        """
        return Stepper(self.to_stepper_config())
