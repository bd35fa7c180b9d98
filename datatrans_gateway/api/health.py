"""Health-check endpoint for load balancers and container probes."""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Return 200 with ``{"status": "healthy"}`` while the process serves requests."""
    return {"status": "healthy", "service": "datatrans-gateway"}
