"""Routers package."""

from . import (
    health,
    onboarding,
    credits,
    billing,
    jobs,
)
