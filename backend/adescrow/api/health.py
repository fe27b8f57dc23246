from fastapi import APIRouter

from adescrow.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public")
async def public_config() -> dict:
    """Public deal terms: fees, timeouts and the TON network in use."""
    return {
        "platform_fee_percent": settings.platform_fee_percent,
        "ton_network": settings.ton_network,
        "payment_timeout_hours": settings.payment_timeout_hours,
        "creative_timeout_hours": settings.creative_timeout_hours,
        "escrow_funding_hours": settings.escrow_funding_hours,
        "default_post_duration_hours": settings.default_post_duration_hours,
        "verification_check_hours": settings.verification_check_hours,
    }
