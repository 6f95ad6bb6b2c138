from fastapi import APIRouter, Depends

from listing_trust.core.config import Settings, get_settings

router = APIRouter()


@router.get("/healthz")
async def healthz(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {
        "status": "ok",
        "service": settings.app_name,
        "storage_backend": settings.storage_backend,
    }
