"""Routers package."""

from . import (
    health,
    billing,
    redeem,
    generate,
)
