from __future__ import annotations

from typing import Any, Dict, List, Type

from .base import BaseGenerationProvider
from .fal_queue import FalQueueProvider
from .mock import MockProvider
from .vertex_veo import VertexVeoProvider

PROVIDERS: Dict[str, Type[BaseGenerationProvider]] = {
    "fal_queue": FalQueueProvider,
    "mock": MockProvider,
    "vertex_veo": VertexVeoProvider,
}


def get_provider(name: str, **kwargs: Any) -> BaseGenerationProvider:
    """
    Retrieves an initialized generation provider instance by name.
    """
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        known_providers = ", ".join(PROVIDERS.keys())
        raise ValueError(f"Unknown provider: {name}. Available: {known_providers}")
    return provider_cls(**kwargs)


def list_providers() -> List[str]:
    """Returns a list of available provider names."""
    return sorted(PROVIDERS.keys())
