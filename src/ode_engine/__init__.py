"""ode_engine explicit Runge-Kutta ODE integration engine package."""

from __future__ import annotations

from .config import StepperSettings
from .continuous_output import ContinuousOutputModel
from .errors import (
    ContinuityError,
    DerivativeEvaluationError,
    DimensionMismatchError,
    ErrorCode,
    EventLocalizationError,
    OdeEngineError,
    StepSizeUnderflowError,
    ZeroIntegrationIntervalError,
)
from .events import EventAction, FunctionSwitch, ResetState, SwitchingFunction
from .handlers import DummyStepHandler, FixedStepHandler, StepHandler, StepNormalizer
from .interpolators import (
    ClassicalRungeKuttaStepInterpolator,
    DormandPrince54StepInterpolator,
    EulerStepInterpolator,
    LinearStepInterpolator,
    MidpointStepInterpolator,
    StepInterpolator,
)
from .io import load_continuous_output, save_continuous_output
from .schemes import SCHEMES, RungeKuttaScheme, get_scheme
from .stepper import AdaptiveConfig, DtControllerConfig, Stepper, StepperConfig
from .system import DerivativeSystem, FunctionSystem, RHSFunction

__all__ = [
    "SCHEMES",
    "AdaptiveConfig",
    "ClassicalRungeKuttaStepInterpolator",
    "ContinuityError",
    "ContinuousOutputModel",
    "DerivativeEvaluationError",
    "DerivativeSystem",
    "DimensionMismatchError",
    "DormandPrince54StepInterpolator",
    "DtControllerConfig",
    "DummyStepHandler",
    "ErrorCode",
    "EulerStepInterpolator",
    "EventAction",
    "EventLocalizationError",
    "FixedStepHandler",
    "FunctionSwitch",
    "FunctionSystem",
    "LinearStepInterpolator",
    "MidpointStepInterpolator",
    "OdeEngineError",
    "RHSFunction",
    "ResetState",
    "RungeKuttaScheme",
    "StepHandler",
    "StepInterpolator",
    "StepNormalizer",
    "StepSizeUnderflowError",
    "Stepper",
    "StepperConfig",
    "StepperSettings",
    "SwitchingFunction",
    "ZeroIntegrationIntervalError",
    "get_scheme",
    "load_continuous_output",
    "save_continuous_output",
]

__version__ = "0.1.0"
