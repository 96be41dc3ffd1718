import logging
from dataclasses import dataclass
from typing import Optional

from .config import AppSettings, EndpointConfig
from .quota import QuotaLedger


logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ModelSelection:
    """Backend resolved once per run; narration and change map both use it."""

    tier: str
    endpoint: EndpointConfig
    remaining_uses: Optional[int] = None
    requested_tier: Optional[str] = None

    @property
    def model(self) -> str:
        return self.endpoint.model_id

    @property
    def downgraded(self) -> bool:
        return bool(self.requested_tier) and self.requested_tier != self.tier


def default_selection(settings: AppSettings, requested_tier: Optional[str] = None) -> ModelSelection:
    return ModelSelection(
        tier=settings.default_tier,
        endpoint=settings.default_endpoint(),
        remaining_uses=None,
        requested_tier=requested_tier,
    )


async def select_model(
    user_id: Optional[str],
    requested_tier: Optional[str],
    settings: AppSettings,
    quota: QuotaLedger,
) -> ModelSelection:
    tier = requested_tier or settings.default_tier
    if tier == settings.default_tier or not user_id:
        return default_selection(settings, requested_tier)
    endpoint = settings.model_tiers.get(tier)
    if endpoint is None:
        logger.info("Unknown model tier %s requested; using %s", tier, settings.default_tier)
        return default_selection(settings, requested_tier)
    try:
        entitlement = await quota.check_premium_entitlement(user_id)
        if not entitlement.allowed:
            logger.info("Premium tier %s denied for user %s: %s", tier, user_id[:8], entitlement.reason)
            return default_selection(settings, requested_tier)
        remaining = await quota.record_premium_usage(user_id)
    except Exception as exc:
        logger.warning("Premium usage check failed for user %s: %s", user_id[:8], exc)
        return default_selection(settings, requested_tier)
    return ModelSelection(tier=tier, endpoint=endpoint, remaining_uses=remaining, requested_tier=requested_tier)


async def search_allowed(user_id: Optional[str], web_search_enabled: bool, quota: QuotaLedger) -> bool:
    """Web search is gated like a premium feature."""
    if not web_search_enabled or not user_id:
        return False
    try:
        entitlement = await quota.check_premium_entitlement(user_id)
    except Exception as exc:
        logger.warning("Search entitlement check failed for user %s: %s", user_id[:8], exc)
        return False
    return entitlement.allowed
