"""Routers package."""

from . import (
    health,
    auth,
    economy,
    servers,
    store,
    catalog,
)
