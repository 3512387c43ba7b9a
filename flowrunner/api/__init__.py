"""HTTP API for the workflow execution engine."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]
