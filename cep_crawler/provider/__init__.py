"""
External CEP lookup providers.

Providers are selected at process start from an explicit list of names in
the settings; there is no runtime discovery.
"""

from typing import Callable, Dict, List

from ..config.settings import CrawlerSettings
from .base import CepProvider, JsonHTTPClient
from .brasilapi import BrasilApiProvider
from .viacep import ViaCepProvider

__all__ = [
    "CepProvider",
    "JsonHTTPClient",
    "ViaCepProvider",
    "BrasilApiProvider",
    "create_providers",
]


def _viacep(settings: CrawlerSettings) -> CepProvider:
    return ViaCepProvider(
        base_url=settings.viacep_base_url,
        test_cep=settings.viacep_test_cep,
        timeout_seconds=settings.provider_timeout_seconds,
        user_agent=settings.user_agent,
    )


def _brasilapi(settings: CrawlerSettings) -> CepProvider:
    return BrasilApiProvider(
        base_url=settings.brasilapi_base_url,
        test_cep=settings.brasilapi_test_cep,
        timeout_seconds=settings.provider_timeout_seconds,
        user_agent=settings.user_agent,
    )


PROVIDER_FACTORIES: Dict[str, Callable[[CrawlerSettings], CepProvider]] = {
    "viacep": _viacep,
    "brasilapi": _brasilapi,
}


def create_providers(settings: CrawlerSettings) -> List[CepProvider]:
    """
    Build the configured providers, in configuration order.

    Raises:
        ValueError: If a configured provider name is unknown
    """
    providers: List[CepProvider] = []
    for name in settings.providers:
        factory = PROVIDER_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"Unknown provider: {name}. Must be one of {sorted(PROVIDER_FACTORIES)}")
        providers.append(factory(settings))
    return providers
