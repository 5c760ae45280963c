# api/__init__.py
from api.server import (
    app,
    create_app,
    build_services,
    Services,
)

__all__ = [
    "app",
    "create_app",
    "build_services",
    "Services",
]
