from fastapi import APIRouter

from listing_trust.api.routes import admin, health, listings, notifications

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(listings.router, prefix="/listings", tags=["owner"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["owner"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
