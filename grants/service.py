import hmac
import logging
import time
from typing import Callable, Optional

from .balance import BalanceLedger, InMemorySettlement, SettlementSource
from .challenges import ChallengeIssuer
from .claims import ClaimProcessor
from .config import Settings, get_settings
from .eligibility import EligibilityResolver
from .errors import NotFoundError
from .models import (
    CaptchaChallenge,
    CaptchaSolution,
    ChallengeResponse,
    ClaimProof,
    ClaimResult,
    CreatePromotionRequest,
    DiscoveredPromotion,
    IngestGrantsRequest,
    IngestResult,
    Promotion,
    RedeemResult,
    RequestContext,
    WalletBalance,
    WalletState,
)
from .registry import PromotionRegistry
from .signing import AttestationVerifier, Ed25519JwsVerifier, GrantVerifier
from .store import InMemoryStorage, with_provider

logger = logging.getLogger(__name__)


class GrantService:
    """Entry point for every grant, challenge, claim and balance operation."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settlement: Optional[SettlementSource] = None,
        settings: Optional[Settings] = None,
        grant_verifier: Optional[GrantVerifier] = None,
        attestation_verifier: Optional[AttestationVerifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.settlement = settlement or InMemorySettlement(retry_after=self.settings.settlement_retry_after_seconds)
        self.clock = clock

        grant_verifier = grant_verifier or GrantVerifier(Ed25519JwsVerifier(self.settings.grant_public_keys))
        attestation_verifier = attestation_verifier or Ed25519JwsVerifier(self.settings.attestation_public_keys)

        self.registry = PromotionRegistry(self.storage, grant_verifier, self.settings)
        self.issuer = ChallengeIssuer(self.storage, self.settings, clock)
        self.resolver = EligibilityResolver(self.registry, self.settings, clock)
        self.claims = ClaimProcessor(
            self.storage, self.registry, self.resolver, self.issuer, attestation_verifier, clock
        )
        self.ledger = BalanceLedger(self.storage, self.settlement, self.settings, clock)

    # Wallets

    def register_wallet(self, wallet_id: str, provider_id: Optional[str] = None) -> WalletState:
        with self.storage.wallet_lock(wallet_id):
            existing = self.storage.get_wallet(wallet_id)
            if existing is not None:
                if provider_id is not None and provider_id != existing.provider_id:
                    return self.link_provider(wallet_id, provider_id)
                return existing
            wallet = self.storage.create_wallet(
                WalletState(wallet_id=wallet_id, provider_id=provider_id, created_at=self.clock())
            )
        logger.info("Registered wallet %s", wallet_id)
        return wallet

    def link_provider(self, wallet_id: str, provider_id: Optional[str]) -> WalletState:
        wallet = self.storage.update_wallet(wallet_id, with_provider(provider_id))
        logger.info("Wallet %s linked to provider %s", wallet_id, provider_id)
        return wallet

    def get_wallet(self, wallet_id: str) -> WalletState:
        wallet = self.storage.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return wallet

    # Promotions

    def create_promotion(self, request: CreatePromotionRequest) -> Promotion:
        return self.registry.create_promotion(request)

    def ingest(self, request: IngestGrantsRequest) -> IngestResult:
        return self.registry.ingest(request.grants, request.promotions)

    def set_promotion_active(self, promotion_id: str, active: bool) -> Promotion:
        return self.registry.set_active(promotion_id, active)

    def get_promotion(self, promotion_id: str) -> Promotion:
        return self.registry.get_promotion(promotion_id)

    # Discovery

    def discover(self, context: RequestContext, wallet_id: Optional[str] = None) -> list[DiscoveredPromotion]:
        wallet = self.get_wallet(wallet_id) if wallet_id else None
        return self.resolver.discover(wallet, context)

    def discover_one(
        self, context: RequestContext, wallet_id: Optional[str] = None, issue_challenge: bool = True
    ) -> DiscoveredPromotion:
        """Best promotion for the wallet; also re-issues its attestation nonce."""
        wallet = self.get_wallet(wallet_id) if wallet_id else None
        promotion = self.resolver.discover_one(wallet, context)
        if wallet is not None and issue_challenge:
            challenge = self.issuer.issue_challenge(wallet.wallet_id)
            promotion = promotion.model_copy(update={"nonce": challenge.nonce})
        return promotion

    def cooldown_bypassed(self, token: Optional[str]) -> bool:
        expected = self.settings.cooldown_bypass_token
        if not expected or not token:
            return False
        return hmac.compare_digest(expected.encode(), token.encode())

    # Challenges

    def issue_challenge(self, wallet_id: str) -> ChallengeResponse:
        return self.issuer.issue_challenge(wallet_id)

    def issue_captcha(self, wallet_id: str) -> CaptchaChallenge:
        return self.issuer.issue_captcha(wallet_id)

    def solve(self, wallet_id: str, solution: CaptchaSolution) -> None:
        self.issuer.solve(wallet_id, solution)

    # Claims and balances

    def claim(self, wallet_id: str, promotion_id: str, proof: ClaimProof, context: RequestContext) -> ClaimResult:
        return self.claims.claim(wallet_id, promotion_id, proof, context)

    def get_balance(self, wallet_id: str, refresh: bool = False, expected_amount: Optional[int] = None) -> WalletBalance:
        return self.ledger.get_balance(wallet_id, refresh=refresh, expected_amount=expected_amount)

    def invalidate_balance(self, wallet_id: str) -> None:
        self.ledger.invalidate(wallet_id)

    def redeem(self, wallet_id: str) -> RedeemResult:
        return self.ledger.redeem(wallet_id)
