from fastapi import APIRouter
from app.api.endpoints import plex_sync

api_router = APIRouter()
api_router.include_router(plex_sync.router, prefix="/plex-sync", tags=["plex-sync"])
