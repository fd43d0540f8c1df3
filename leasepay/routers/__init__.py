"""API routers for the leasepay backend."""
from fastapi import APIRouter

from . import health, mpesa, payments


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(payments.router)
    api_router.include_router(mpesa.router)
    return api_router
