import logging
from typing import Callable, Iterable, Optional
from uuid import uuid4

from pydantic import ValidationError

from .config import Settings
from .errors import BadRequestError, ConflictError, NotFoundError
from .models import (
    CreatePromotionRequest,
    GeoRule,
    Grant,
    GrantClass,
    IngestResult,
    Promotion,
    PromotionType,
    promotion_adapter,
)
from .signing import GrantVerifier, InvalidTokenError
from .store import InMemoryStorage

logger = logging.getLogger(__name__)


class PromotionRegistry:
    """Promotion records and their pools of signed, unclaimed grants."""

    def __init__(
        self,
        storage: InMemoryStorage,
        grant_verifier: GrantVerifier,
        settings: Settings,
    ):
        self.storage = storage
        self.grant_verifier = grant_verifier
        self.settings = settings

    def create_promotion(self, request: CreatePromotionRequest) -> Promotion:
        promotion = self._build(request)
        if not self._add(promotion):
            raise ConflictError(f"Promotion {promotion.promotion_id} already exists")
        return promotion

    def ingest(self, grants: Iterable[str], promotions: Iterable[CreatePromotionRequest]) -> IngestResult:
        """Bulk upload of promotions and signed grant tokens.

        Known promotions are left as they are. Every promotion and token is
        validated before anything is stored, so one bad entry rejects the
        whole upload.
        """
        pending: dict[str, Promotion] = {}
        for request in promotions:
            if request.promotion_id and (
                request.promotion_id in pending or self.storage.get_promotion(request.promotion_id)
            ):
                continue
            promotion = self._build(request)
            pending[promotion.promotion_id] = promotion

        verified: list[Grant] = []
        for token in grants:
            try:
                grant = self.grant_verifier.verify(token)
            except InvalidTokenError as e:
                logger.warning("Rejected grant upload: %s", e)
                raise BadRequestError(f"Invalid grant token: {e}") from e
            promotion = pending.get(grant.promotion_id) or self.storage.get_promotion(grant.promotion_id)
            if promotion is None:
                raise NotFoundError(f"Promotion {grant.promotion_id} not found for grant {grant.grant_id}")
            defaults = {}
            if grant.type is None:
                defaults["type"] = promotion.type
            if grant.altcurrency is None:
                defaults["altcurrency"] = self.settings.default_altcurrency
            if defaults:
                grant = grant.model_copy(update=defaults)
            verified.append(grant)

        promotions_added = sum(1 for promotion in pending.values() if self._add(promotion))
        added = sum(1 for grant in verified if self.storage.add_grant(grant))
        logger.info("Ingested %d grants (%d already known), %d new promotions",
                    added, len(verified) - added, promotions_added)
        return IngestResult(
            promotions_added=promotions_added,
            grants_added=added,
            grants_skipped=len(verified) - added,
        )

    def get_promotion(self, promotion_id: str) -> Promotion:
        promotion = self.storage.get_promotion(promotion_id)
        if promotion is None:
            raise NotFoundError(f"Promotion {promotion_id} not found")
        return promotion

    def list_active(self, platform: str, protocol_version: int) -> list[Promotion]:
        promotions = [
            p for p in self.storage.list_promotions()
            if p.active and p.visible_on(platform) and p.protocol_version <= protocol_version
        ]
        promotions.sort(key=lambda p: (p.priority, p.sequence))
        return promotions

    def set_active(self, promotion_id: str, active: bool) -> Promotion:
        promotion = self.get_promotion(promotion_id)
        if promotion.active == active:
            return promotion
        updated = promotion.model_copy(update={"active": active})
        self.storage.replace_promotion(updated)
        logger.info("Promotion %s %s", promotion_id, "activated" if active else "deactivated")
        return updated

    def available_grant(self, promotion: Promotion, provider_id: Optional[str], now: float) -> Optional[Grant]:
        return self.storage.peek_grant(promotion.promotion_id, self.grant_filter(promotion, provider_id, now))

    def grant_filter(self, promotion: Promotion, provider_id: Optional[str], now: float) -> Callable[[Grant], bool]:
        def accept(grant: Grant) -> bool:
            if grant.is_expired(now):
                return False
            if promotion.grant_class == GrantClass.ADS:
                return provider_id is not None and grant.provider_id == provider_id
            return True
        return accept

    def _add(self, promotion: Promotion) -> bool:
        if not self.storage.add_promotion(promotion):
            return False
        logger.info(
            "Created %s promotion %s (platform=%r, priority=%d, protocol=%d)",
            promotion.type, promotion.promotion_id, promotion.platform,
            promotion.priority, promotion.protocol_version,
        )
        return True

    def _build(self, request: CreatePromotionRequest) -> Promotion:
        platform = request.platform
        if request.type == PromotionType.ANDROID and not platform:
            platform = "android"
        geo = request.geo
        if geo is None:
            geo = GeoRule.anywhere() if request.type == PromotionType.ADS else GeoRule.excluding(self.settings.ads_regions)
        data = {
            "promotion_id": request.promotion_id or str(uuid4()),
            "type": request.type.value,
            "platform": platform,
            "active": request.active,
            "priority": request.priority,
            "protocol_version": (
                self.settings.default_protocol_version
                if request.protocol_version is None else request.protocol_version
            ),
            "minimum_reconcile_timestamp": request.minimum_reconcile_timestamp,
            "geo": geo,
            "sequence": self.storage.next_sequence(),
        }
        try:
            return promotion_adapter.validate_python(data)
        except ValidationError as e:
            raise BadRequestError(f"Invalid promotion: {e.error_count()} errors") from e
