"""Shared router dependencies."""

from fastapi import HTTPException, Request

from services.providers import ProviderBundle


def get_providers(request: Request) -> ProviderBundle:
    """Provider clients built once in the application lifespan."""
    providers = getattr(request.app.state, "providers", None)
    if providers is None:
        raise HTTPException(status_code=503, detail="Providers are not initialized.")
    return providers
