from __future__ import annotations

from app.api.routes.health import router as health_router
from app.api.routes.process import router as process_router

__all__ = ["health_router", "process_router"]
