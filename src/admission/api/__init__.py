"""API package for the workshop admission layer."""

from admission.api.app import create_app
from admission.api.dependencies import require_admission
from admission.api.routes import router

__all__ = ["create_app", "require_admission", "router"]
