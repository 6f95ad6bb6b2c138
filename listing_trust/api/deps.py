from fastapi import Depends

from listing_trust.core.config import Settings, get_settings
from listing_trust.services.coordinator import PipelineCoordinator
from listing_trust.services.rate_limit import SharedRateLimiter
from listing_trust.services.repository import get_repository


def get_coordinator(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> PipelineCoordinator:
    return PipelineCoordinator(
        repository,
        timeout_seconds=settings.operation_timeout_seconds,
        default_radius_km=settings.duplicate_default_radius_km,
        rate_limiter=SharedRateLimiter(
            repository,
            limit=settings.submission_rate_limit,
            window_seconds=settings.submission_rate_window_seconds,
        ),
    )
