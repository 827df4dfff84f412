"""HTTP and WebSocket adapter: FastAPI application factory for infra-wizard.

Exposes the deployment REST endpoints, source-branch lookup, health, and the
live event WebSocket.
"""
from __future__ import annotations

from infra_wizard.api.app import create_app

__all__ = ["create_app"]
