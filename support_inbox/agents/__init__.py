"""AI support agent pipeline."""

from . import schemas
from .debounce import DebounceCoordinator
from .logs import InteractionLogWriter
from .providers import (
    ModelProviderGateway,
    ProviderConfigurationError,
    get_provider_from_model,
)
from .service import SupportAgentService

__all__ = [
    "DebounceCoordinator",
    "InteractionLogWriter",
    "ModelProviderGateway",
    "ProviderConfigurationError",
    "SupportAgentService",
    "get_provider_from_model",
    "schemas",
]
