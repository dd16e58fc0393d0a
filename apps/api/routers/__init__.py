"""Routers package."""

from . import (
    health,
    auth,
    billing,
    webhooks,
    generate,
    mobile,
)
