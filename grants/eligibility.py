import logging
import time
from typing import Callable, Optional

from .config import Settings
from .errors import NotFoundError
from .models import (
    DiscoveredPromotion,
    Grant,
    GrantClass,
    Promotion,
    RequestContext,
    WalletState,
)
from .registry import PromotionRegistry

logger = logging.getLogger(__name__)


class EligibilityResolver:
    """Decides which promotions a wallet may currently see and claim."""

    def __init__(self, registry: PromotionRegistry, settings: Settings, clock: Callable[[], float] = time.time):
        self.registry = registry
        self.settings = settings
        self.clock = clock

    def discover(self, wallet: Optional[WalletState], context: RequestContext) -> list[DiscoveredPromotion]:
        if self.cooling_down(wallet, context):
            return []
        return [self._describe(p, g) for p, g in self._eligible(wallet, context)]

    def discover_one(self, wallet: Optional[WalletState], context: RequestContext) -> DiscoveredPromotion:
        if self.cooling_down(wallet, context):
            raise NotFoundError("No promotions available")
        candidates = self._eligible(wallet, context)
        if not candidates:
            raise NotFoundError("No promotions available")
        # ads grants are surfaced (and must be claimed) before any ugp grant
        candidates.sort(key=lambda pg: (
            0 if pg[0].grant_class == GrantClass.ADS else 1, pg[0].priority, pg[0].sequence
        ))
        promotion, grant = candidates[0]
        return self._describe(promotion, grant)

    def cooling_down(self, wallet: Optional[WalletState], context: RequestContext) -> bool:
        if wallet is None or context.bypass_cooldown:
            return False
        return wallet.in_cooldown(self.clock(), self.settings.claim_cooldown_seconds)

    def platform_for(self, context: RequestContext) -> str:
        """Requests from unknown platforms only see platform-agnostic promotions."""
        if context.platform in self.settings.supported_platforms:
            return context.platform
        return ""

    def platform_admits(self, promotion: Promotion, context: RequestContext) -> bool:
        return promotion.visible_on(self.platform_for(context))

    def region_admits(self, promotion: Promotion, context: RequestContext) -> bool:
        return promotion.geo.admits(context.country)

    def _eligible(self, wallet: Optional[WalletState], context: RequestContext) -> list[tuple[Promotion, Grant]]:
        now = self.clock()
        provider_id = wallet.provider_id if wallet else None
        eligible = []
        for promotion in self.registry.list_active(self.platform_for(context), context.protocol_version):
            if not promotion.reconcilable(now):
                continue
            if not self.region_admits(promotion, context):
                continue
            if wallet is not None and wallet.has_claimed(promotion.promotion_id):
                continue
            grant = self.registry.available_grant(promotion, provider_id, now)
            if grant is None:
                continue
            eligible.append((promotion, grant))
        logger.debug("%d promotions eligible for wallet %s (platform=%r, country=%r)",
                     len(eligible), wallet.wallet_id if wallet else None, context.platform, context.country)
        return eligible

    def _describe(self, promotion: Promotion, grant: Grant) -> DiscoveredPromotion:
        return DiscoveredPromotion(
            promotion_id=promotion.promotion_id,
            type=promotion.display_type,
            priority=promotion.priority,
            protocol_version=promotion.protocol_version,
            minimum_reconcile_timestamp=promotion.minimum_reconcile_timestamp,
            platform=promotion.platform,
            altcurrency=grant.altcurrency,
            probi=str(grant.probi),
            maturity_time=grant.maturity_time,
            expiry_time=grant.expiry_time,
        )
