"""
Main API router that includes all v1 endpoints.
"""
from fastapi import APIRouter

from . import data, refresh

router = APIRouter()

router.include_router(refresh.router)
router.include_router(data.router)
