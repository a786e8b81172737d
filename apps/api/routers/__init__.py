"""Routers package."""

from . import (
    health,
    auth,
    profile,
    generation,
    billing,
)
