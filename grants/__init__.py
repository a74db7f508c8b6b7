"""
Grant Claim & Balance Ledger

This package provides:
- Promotion registry with signed grant pools
- Single-use attestation nonces and captcha challenges per wallet
- Eligibility resolution by platform, region, protocol version and cooldown
- Exactly-once grant claims
- Wallet balances merged with an externally computed settlement total
"""

from .balance import BalanceLedger, InMemorySettlement, Pending, Ready, wait_for_balance
from .errors import (
    BadRequestError,
    ConflictError,
    GoneError,
    GrantServiceError,
    InternalError,
    InvalidChallengeError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
)
from .models import (
    AttestationProof,
    CaptchaProof,
    CaptchaSolution,
    GeoRule,
    Grant,
    PromotionType,
    RequestContext,
    WalletState,
)
from .service import GrantService

__all__ = [
    "BalanceLedger",
    "InMemorySettlement",
    "Pending",
    "Ready",
    "wait_for_balance",
    "BadRequestError",
    "ConflictError",
    "GoneError",
    "GrantServiceError",
    "InternalError",
    "InvalidChallengeError",
    "NotFoundError",
    "ServiceUnavailableError",
    "UnauthorizedError",
    "AttestationProof",
    "CaptchaProof",
    "CaptchaSolution",
    "GeoRule",
    "Grant",
    "PromotionType",
    "RequestContext",
    "WalletState",
    "GrantService",
]
