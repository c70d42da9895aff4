"""Explicitly constructed external collaborators."""

from __future__ import annotations

from dataclasses import dataclass

from config import Settings
from services.providers.generation import BaseGenerationProvider, HttpGenerationProvider
from services.providers.payments import BasePaymentProvider, HttpPaymentProvider
from services.providers.storage import BaseObjectStorage, LocalObjectStorage


@dataclass
class ProviderBundle:
    generation: BaseGenerationProvider
    payments: BasePaymentProvider
    storage: BaseObjectStorage

    async def aclose(self) -> None:
        await self.generation.aclose()
        await self.payments.aclose()


def build_providers(config: Settings) -> ProviderBundle:
    """Construct provider clients from configuration values."""
    return ProviderBundle(
        generation=HttpGenerationProvider(
            base_url=config.GENERATION_PROVIDER_BASE_URL,
            api_key=config.GENERATION_PROVIDER_API_KEY,
            timeout_seconds=config.GENERATION_PROVIDER_TIMEOUT_SECONDS,
        ),
        payments=HttpPaymentProvider(
            base_url=config.PAYMENT_PROVIDER_BASE_URL,
            api_key=config.PAYMENT_PROVIDER_API_KEY,
            timeout_seconds=config.PAYMENT_PROVIDER_TIMEOUT_SECONDS,
        ),
        storage=LocalObjectStorage(
            root_dir=config.ASSET_STORAGE_DIR,
            public_base_url=config.ASSET_PUBLIC_BASE_URL,
        ),
    )
