"""
Claim state machine.

Per (wallet, promotion): Unclaimed -> ChallengeIssued -> Verified -> Claimed.
Every check runs under the wallet's lock, so the "not yet claimed" test and
the attach cannot interleave with another claim for the same wallet.
"""

import logging
import time
from typing import Callable, Optional

from .challenges import ChallengeIssuer
from .eligibility import EligibilityResolver
from .errors import (
    BadRequestError,
    ConflictError,
    GoneError,
    GrantServiceError,
    InternalError,
    InvalidChallengeError,
    NotFoundError,
    UnauthorizedError,
)
from .models import (
    AttestationProof,
    CaptchaProof,
    CaptchaSolution,
    ClaimedGrant,
    ClaimProof,
    ClaimResult,
    Cohort,
    GrantClass,
    RequestContext,
    WalletState,
)
from .registry import PromotionRegistry
from .signing import AttestationVerifier, InvalidTokenError
from .store import InMemoryStorage, with_claim, with_cohort, without_challenge

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Promotion not available"


class ClaimProcessor:
    def __init__(
        self,
        storage: InMemoryStorage,
        registry: PromotionRegistry,
        resolver: EligibilityResolver,
        issuer: ChallengeIssuer,
        attestation_verifier: AttestationVerifier,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.registry = registry
        self.resolver = resolver
        self.issuer = issuer
        self.attestation_verifier = attestation_verifier
        self.clock = clock

    def claim(self, wallet_id: str, promotion_id: str, proof: ClaimProof, context: RequestContext) -> ClaimResult:
        with self.storage.wallet_lock(wallet_id):
            wallet = self.storage.get_wallet(wallet_id)
            if wallet is None:
                raise NotFoundError(f"Wallet {wallet_id} not found")
            promotion = self.storage.get_promotion(promotion_id)
            if promotion is None or not promotion.active:
                raise NotFoundError(f"Promotion {promotion_id} not found")
            if wallet.has_claimed(promotion_id):
                raise ConflictError(f"Grant for promotion {promotion_id} already exists on wallet {wallet_id}")

            now = self.clock()
            if not self.resolver.platform_admits(promotion, context) or not promotion.reconcilable(now):
                raise NotFoundError(NOT_AVAILABLE)
            if not self.resolver.region_admits(promotion, context):
                raise BadRequestError(
                    f"Promotion {promotion_id} cannot be claimed from region {context.country!r}"
                )
            accept = self.registry.grant_filter(promotion, wallet.provider_id, now)
            if self.storage.peek_grant(promotion_id, accept) is None:
                if promotion.grant_class == GrantClass.ADS:
                    raise GoneError(f"No ads grant for the provider linked to wallet {wallet_id}")
                raise NotFoundError(NOT_AVAILABLE)

            cohort = self._verify(wallet, proof)
            self.storage.update_wallet(wallet_id, with_cohort(cohort))

            grant = self.storage.take_grant(promotion_id, wallet_id, accept)
            if grant is None:
                raise NotFoundError(NOT_AVAILABLE)
            claimed = ClaimedGrant(grant=grant, type=grant.type or promotion.type, claimed_at=now)
            try:
                wallet = self.storage.update_wallet(wallet_id, with_claim(claimed, cohort))
            except GrantServiceError:
                self.storage.release_grant(grant)
                raise
            except Exception as e:
                self.storage.release_grant(grant)
                logger.exception("Failed to attach grant %s to wallet %s", grant.grant_id, wallet_id)
                raise InternalError(f"Failed to attach grant to wallet {wallet_id}") from e

        logger.info("Wallet %s claimed grant %s from promotion %s (%s probi)",
                    wallet_id, grant.grant_id, promotion_id, grant.probi)
        return ClaimResult(
            wallet_id=wallet_id,
            promotion_id=promotion_id,
            grant_id=grant.grant_id,
            type=claimed.type,
            altcurrency=grant.altcurrency,
            probi=str(grant.probi),
            expiry_time=grant.expiry_time,
            cohort=wallet.cohort,
        )

    def _verify(self, wallet: WalletState, proof: ClaimProof) -> str:
        """Check the proof against the live challenge and return the cohort it earns.

        The challenge is cleared before comparing, whatever the outcome.
        """
        expected_captcha = self.issuer.live_captcha(wallet)
        submitted: Optional[CaptchaSolution] = None
        if isinstance(proof, CaptchaProof):
            submitted = proof.solution or wallet.captcha_solution
        nonce = self.issuer.live_nonce(wallet)
        self.storage.update_wallet(wallet.wallet_id, without_challenge)

        if isinstance(proof, CaptchaProof):
            if expected_captcha is None or submitted is None or submitted != expected_captcha:
                logger.warning("Captcha rejected for wallet %s", wallet.wallet_id)
                raise NotFoundError(NOT_AVAILABLE)
            return Cohort.CONTROL.value

        if isinstance(proof, AttestationProof):
            try:
                claims = self.attestation_verifier.verify(proof.token)
            except InvalidTokenError as e:
                logger.warning("Attestation rejected for wallet %s: %s", wallet.wallet_id, e)
                raise UnauthorizedError("Attestation token is not valid") from e
            if nonce is None or claims.get("nonce") != nonce:
                logger.warning("Attestation nonce mismatch for wallet %s", wallet.wallet_id)
                raise InvalidChallengeError("No matching challenge for wallet")
            return Cohort.SAFETYNET.value

        raise BadRequestError(f"Unsupported proof {type(proof).__name__}")
