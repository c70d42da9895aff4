"""Routers package."""

from . import (
    health,
    auth,
    billing,
    generation,
    webhooks,
    admin,
)
