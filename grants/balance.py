"""
Wallet balance: external settlement total plus matured, unredeemed grants.

The settlement source is polled, never awaited. A pending computation is
reported to the caller as ServiceUnavailableError carrying a retry-after hint;
callers loop (see ``wait_for_balance``) until it is ready.
"""

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from typing import Callable, Optional, Protocol, Union

from .config import Settings
from .errors import BadRequestError, NotFoundError, ServiceUnavailableError
from .models import (
    PROBI_PER_TOKEN,
    PROBI_PLACES,
    BalanceCache,
    GrantSummary,
    RedeemResult,
    WalletBalance,
    WalletState,
)
from .store import InMemoryStorage, with_balance_cache, with_redeemed, without_balance_cache

logger = logging.getLogger(__name__)

DISPLAY_PLACES = 4


@dataclass(frozen=True)
class Ready:
    total: int
    card_balance: int = 0


@dataclass(frozen=True)
class Pending:
    retry_after: int


SettlementResult = Union[Ready, Pending]


class SettlementSource(Protocol):
    def compute_settlement(self, wallet_id: str, expected_amount: Optional[int]) -> SettlementResult:
        """Must return immediately: Ready when computed, Pending otherwise."""
        ...


def format_probi(probi: int, places: int = DISPLAY_PLACES) -> str:
    """Render probi as a token amount with a fixed number of places (truncating)."""
    sign = "-" if probi < 0 else ""
    whole, fraction = divmod(abs(probi), PROBI_PER_TOKEN)
    scale = PROBI_PER_TOKEN // 10 ** places
    return f"{sign}{whole}.{fraction // scale:0{places}d}"


def parse_amount(amount: Optional[str]) -> Optional[int]:
    """Token amount string (e.g. "15.0") to probi, exactly.

    Amounts finer than one probi are rejected rather than rounded.
    """
    if amount is None or amount == "":
        return None
    try:
        value = Decimal(amount)
    except InvalidOperation as e:
        raise BadRequestError(f"Invalid amount {amount!r}") from e
    if not value.is_finite() or value < 0 or value.as_tuple().exponent < -PROBI_PLACES:
        raise BadRequestError(f"Invalid amount {amount!r}")
    with localcontext() as ctx:
        ctx.prec = len(value.as_tuple().digits) + PROBI_PLACES
        ctx.traps[Inexact] = True
        try:
            return int(value.scaleb(PROBI_PLACES))
        except Inexact as e:
            raise BadRequestError(f"Invalid amount {amount!r}") from e


class InMemorySettlement:
    """Settlement source for development and tests.

    Each wallet can be made to report Pending for a number of polls before
    its total becomes Ready.
    """

    def __init__(self, retry_after: int = 5):
        self.retry_after = retry_after
        self.totals: dict[str, tuple[int, int]] = {}
        self.pending_polls: dict[str, int] = {}
        self.requests: list[tuple[str, Optional[int]]] = []
        self._lock = threading.Lock()

    def set_total(self, wallet_id: str, total: int, card_balance: int = 0) -> None:
        with self._lock:
            self.totals[wallet_id] = (total, card_balance)

    def set_pending(self, wallet_id: str, polls: int) -> None:
        with self._lock:
            self.pending_polls[wallet_id] = polls

    def compute_settlement(self, wallet_id: str, expected_amount: Optional[int]) -> SettlementResult:
        with self._lock:
            self.requests.append((wallet_id, expected_amount))
            remaining = self.pending_polls.get(wallet_id, 0)
            if remaining > 0:
                self.pending_polls[wallet_id] = remaining - 1
                return Pending(retry_after=self.retry_after)
            total, card_balance = self.totals.get(wallet_id, (0, 0))
            return Ready(total=total, card_balance=card_balance)


class BalanceLedger:
    def __init__(
        self,
        storage: InMemoryStorage,
        settlement: SettlementSource,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.settlement = settlement
        self.settings = settings
        self.clock = clock

    def get_balance(self, wallet_id: str, refresh: bool = False, expected_amount: Optional[int] = None) -> WalletBalance:
        wallet = self._wallet(wallet_id)
        now = self.clock()
        cache = wallet.balance_cache
        if not refresh and cache is not None and cache.valid_until > now:
            return self._render(cache)

        result = self.settlement.compute_settlement(wallet_id, expected_amount)
        if isinstance(result, Pending):
            logger.info("Settlement for wallet %s pending, retry in %ss", wallet_id, result.retry_after)
            raise ServiceUnavailableError(
                f"Balance for wallet {wallet_id} is being computed",
                retry_after=result.retry_after or self.settings.settlement_retry_after_seconds,
            )

        with self.storage.wallet_lock(wallet_id):
            wallet = self._wallet(wallet_id)
            cache = self._compute(wallet, result, now)
            self.storage.update_wallet(wallet_id, with_balance_cache(cache))
        return self._render(cache)

    def invalidate(self, wallet_id: str) -> None:
        self.storage.update_wallet(wallet_id, without_balance_cache)
        logger.debug("Balance cache invalidated for wallet %s", wallet_id)

    def redeem(self, wallet_id: str) -> RedeemResult:
        """Mark matured grants as settled; they drop out of later balances' grant lists."""
        with self.storage.wallet_lock(wallet_id):
            wallet = self._wallet(wallet_id)
            now = self.clock()
            redeemable = [c for c in wallet.unredeemed() if c.grant.is_mature(now)]
            grant_ids = [c.grant.grant_id for c in redeemable]
            if grant_ids:
                self.storage.update_wallet(wallet_id, with_redeemed(set(grant_ids)))
        probi = sum(c.grant.probi for c in redeemable)
        logger.info("Wallet %s redeemed %d grants (%s probi)", wallet_id, len(grant_ids), probi)
        return RedeemResult(wallet_id=wallet_id, probi=str(probi), grant_ids=grant_ids)

    def _compute(self, wallet: WalletState, result: Ready, now: float) -> BalanceCache:
        pending = wallet.unredeemed()
        matured = sum(c.grant.probi for c in pending if c.grant.is_mature(now))
        valid_until = now + self.settings.balance_cache_ttl_seconds
        upcoming = [c.grant.maturity_time for c in pending if not c.grant.is_mature(now)]
        if upcoming:
            valid_until = min(valid_until, min(upcoming))
        return BalanceCache(
            total=result.total + matured,
            card_balance=result.card_balance,
            grants_snapshot=[
                GrantSummary(
                    type=c.type,
                    altcurrency=c.grant.altcurrency,
                    expiry_time=c.grant.expiry_time,
                    probi=str(c.grant.probi),
                )
                for c in pending
            ],
            computed_at=now,
            valid_until=valid_until,
        )

    def _render(self, cache: BalanceCache) -> WalletBalance:
        return WalletBalance(
            balance=format_probi(cache.total),
            card_balance=format_probi(cache.card_balance),
            probi=str(cache.total),
            grants=list(cache.grants_snapshot) or None,
        )

    def _wallet(self, wallet_id: str) -> WalletState:
        wallet = self.storage.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return wallet


def wait_for_balance(
    ledger: BalanceLedger,
    wallet_id: str,
    expected_amount: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = 10,
) -> WalletBalance:
    """Poll a refreshing balance read, honouring the retry-after hint."""
    for attempt in range(1, max_attempts + 1):
        try:
            return ledger.get_balance(wallet_id, refresh=True, expected_amount=expected_amount)
        except ServiceUnavailableError as e:
            if attempt == max_attempts:
                raise
            logger.debug("Balance for %s not ready (attempt %d), sleeping %ss", wallet_id, attempt, e.retry_after)
            sleep(e.retry_after)
    raise ValueError("max_attempts must be at least 1")
