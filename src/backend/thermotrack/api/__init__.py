"""API Routes Module."""

from fastapi import APIRouter

from thermotrack.api import temperature

router = APIRouter()

router.include_router(temperature.router, prefix="/temperature", tags=["Temperature"])
