"""
Optional HTTP surface for Report Job Orchestrator (requires the ``web`` extra).
"""

from .app import create_app, build_router

__all__ = ["create_app", "build_router"]
