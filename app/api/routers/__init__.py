"""
app/api/routers package marker.
"""

from app.api.routers.benchmark_router import router as benchmark_router

__all__ = [
    "benchmark_router",
]
