"""API v1 router aggregation"""
from fastapi import APIRouter

from keepsake.api.v1 import auth, backup, system

api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(backup.router)
api_router.include_router(system.router)
