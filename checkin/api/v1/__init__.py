"""API v1 routes."""

from fastapi import APIRouter

from checkin.api.v1.endpoints import qr

api_router = APIRouter()

api_router.include_router(qr.router, prefix="/qr", tags=["QR Check-in"])
