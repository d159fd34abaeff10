"""Routing pipeline — decides who owns a brand-new conversation."""
from routing.pipeline import (
    PipelineConfigurationError, RoutingContext, RoutingPipeline, RoutingStep,
)
from routing.steps import RoutingDependencies, StepRegistry, step_registry
from routing.factory import (
    DEFAULT_CHAIN, PipelineCache, RoutingConfigSource,
    SqlRoutingConfigSource, StaticRoutingConfigSource, normalize_flow,
)

__all__ = [
    "PipelineConfigurationError", "RoutingContext", "RoutingPipeline", "RoutingStep",
    "RoutingDependencies", "StepRegistry", "step_registry",
    "DEFAULT_CHAIN", "PipelineCache", "RoutingConfigSource",
    "SqlRoutingConfigSource", "StaticRoutingConfigSource", "normalize_flow",
]
