from fastapi import APIRouter

from htmlproxy.api import admin, fetch, health

api_router = APIRouter()

api_router.include_router(fetch.router, tags=["Fetch"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
api_router.include_router(health.router, tags=["Health"])
