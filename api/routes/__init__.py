from __future__ import annotations

from fastapi import APIRouter

from api.routes import invariants, mandates, settlements


def get_api_router() -> APIRouter:
    router = APIRouter()

    router.include_router(mandates.router, tags=["mandates"])
    router.include_router(settlements.router, tags=["settlements"])
    router.include_router(invariants.router, tags=["invariants"])

    return router
