"""Buildx builder registration, overlay networking and local fallback."""

from sticky_builder.builder.fallback import (
    FallbackDecision,
    configure_local_builder,
    decide_fallback,
)
from sticky_builder.builder.negotiator import (
    MULTI_HOST_BINDING_ENABLED,
    RemoteBuilderNegotiator,
    generate_builder_name,
    required_workers,
    resolve_platforms,
)

__all__ = [
    "MULTI_HOST_BINDING_ENABLED",
    "FallbackDecision",
    "RemoteBuilderNegotiator",
    "configure_local_builder",
    "decide_fallback",
    "generate_builder_name",
    "required_workers",
    "resolve_platforms",
]
