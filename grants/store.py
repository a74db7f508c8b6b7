"""
Keyed document store for promotions, grant pools and wallet claim state.

Every wallet write goes through ``update_wallet`` with one of the field group
update functions below, under that wallet's lock. Writes to different wallets
never share a lock; grant pools are guarded per promotion.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .errors import ConflictError, NotFoundError
from .models import (
    BalanceCache,
    CaptchaSolution,
    ClaimedGrant,
    Grant,
    Promotion,
    WalletState,
)

logger = logging.getLogger(__name__)

WalletUpdate = Callable[[WalletState], WalletState]


# Field group updates. Each returns a new state one version ahead.


def _bump(state: WalletState, **changes) -> WalletState:
    return state.model_copy(update={**changes, "version": state.version + 1})


def with_challenge(nonce: str, now: float) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        return _bump(
            state, nonce=nonce, nonce_issued_at=now,
            captcha=None, captcha_issued_at=None, captcha_solution=None,
        )
    return apply


def with_captcha(answer: CaptchaSolution, now: float) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        return _bump(
            state, captcha=answer, captcha_issued_at=now, captcha_solution=None,
            nonce=None, nonce_issued_at=None,
        )
    return apply


def with_solution(solution: CaptchaSolution) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        return _bump(state, captcha_solution=solution)
    return apply


def without_challenge(state: WalletState) -> WalletState:
    return _bump(
        state, nonce=None, nonce_issued_at=None,
        captcha=None, captcha_issued_at=None, captcha_solution=None,
    )


def with_claim(claimed: ClaimedGrant, cohort: Optional[str]) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        if state.holds_grant(claimed.grant.grant_id):
            raise ConflictError(f"Grant {claimed.grant.grant_id} already exists on wallet {state.wallet_id}")
        return _bump(
            state,
            claimed_grants=state.claimed_grants + (claimed,),
            cohort=state.cohort or cohort,
            last_claim_at=claimed.claimed_at,
            balance_cache=None,
        )
    return apply


def with_cohort(cohort: str) -> WalletUpdate:
    """Set the cohort once; later verifications never change it."""
    def apply(state: WalletState) -> WalletState:
        if state.cohort is not None:
            return state
        return _bump(state, cohort=cohort)
    return apply


def with_balance_cache(cache: BalanceCache) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        return _bump(state, balance_cache=cache)
    return apply


def without_balance_cache(state: WalletState) -> WalletState:
    return _bump(state, balance_cache=None)


def with_redeemed(grant_ids: set[str]) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        claimed = tuple(
            c.model_copy(update={"redeemed": True}) if c.grant.grant_id in grant_ids else c
            for c in state.claimed_grants
        )
        return _bump(state, claimed_grants=claimed, balance_cache=None)
    return apply


def with_provider(provider_id: Optional[str]) -> WalletUpdate:
    def apply(state: WalletState) -> WalletState:
        return _bump(state, provider_id=provider_id, balance_cache=None)
    return apply


class InMemoryStorage:
    def __init__(self):
        self.promotions: dict[str, Promotion] = {}
        self.grant_pools: dict[str, list[Grant]] = {}
        self.grant_index: dict[str, str] = {}
        self.claimed_by: dict[str, str] = {}
        self.wallets: dict[str, WalletState] = {}
        self._sequence = 0
        self._catalog_lock = threading.Lock()
        self._guard = threading.Lock()
        self._wallet_locks: dict[str, threading.RLock] = {}
        self._pool_locks: dict[str, threading.Lock] = {}

    # Promotions and grants

    def next_sequence(self) -> int:
        with self._catalog_lock:
            self._sequence += 1
            return self._sequence

    def add_promotion(self, promotion: Promotion) -> bool:
        with self._catalog_lock:
            if promotion.promotion_id in self.promotions:
                return False
            self.promotions[promotion.promotion_id] = promotion
            self.grant_pools.setdefault(promotion.promotion_id, [])
            return True

    def replace_promotion(self, promotion: Promotion) -> None:
        with self._catalog_lock:
            if promotion.promotion_id not in self.promotions:
                raise NotFoundError(f"Promotion {promotion.promotion_id} not found")
            self.promotions[promotion.promotion_id] = promotion

    def get_promotion(self, promotion_id: str) -> Optional[Promotion]:
        return self.promotions.get(promotion_id)

    def list_promotions(self) -> list[Promotion]:
        with self._catalog_lock:
            return list(self.promotions.values())

    def add_grant(self, grant: Grant) -> bool:
        with self._catalog_lock:
            if grant.grant_id in self.grant_index:
                return False
            self.grant_index[grant.grant_id] = grant.promotion_id
        with self._pool_lock(grant.promotion_id):
            self.grant_pools.setdefault(grant.promotion_id, []).append(grant)
        return True

    def peek_grant(self, promotion_id: str, accept: Callable[[Grant], bool]) -> Optional[Grant]:
        with self._pool_lock(promotion_id):
            for grant in self.grant_pools.get(promotion_id, []):
                if accept(grant):
                    return grant
        return None

    def take_grant(self, promotion_id: str, wallet_id: str, accept: Callable[[Grant], bool]) -> Optional[Grant]:
        with self._pool_lock(promotion_id):
            pool = self.grant_pools.get(promotion_id, [])
            for index, grant in enumerate(pool):
                if accept(grant):
                    del pool[index]
                    self.claimed_by[grant.grant_id] = wallet_id
                    return grant
        return None

    def release_grant(self, grant: Grant) -> None:
        with self._pool_lock(grant.promotion_id):
            self.claimed_by.pop(grant.grant_id, None)
            self.grant_pools.setdefault(grant.promotion_id, []).insert(0, grant)

    def remaining_grants(self, promotion_id: str) -> int:
        with self._pool_lock(promotion_id):
            return len(self.grant_pools.get(promotion_id, []))

    # Wallets

    def create_wallet(self, state: WalletState) -> WalletState:
        with self.wallet_lock(state.wallet_id):
            if state.wallet_id in self.wallets:
                raise ConflictError(f"Wallet {state.wallet_id} already exists")
            self.wallets[state.wallet_id] = state
            return state

    def get_wallet(self, wallet_id: str) -> Optional[WalletState]:
        return self.wallets.get(wallet_id)

    def update_wallet(
        self, wallet_id: str, update: WalletUpdate, expected_version: Optional[int] = None
    ) -> WalletState:
        with self.wallet_lock(wallet_id):
            current = self.wallets.get(wallet_id)
            if current is None:
                raise NotFoundError(f"Wallet {wallet_id} not found")
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(
                    f"Wallet {wallet_id} changed (version {current.version}, expected {expected_version})"
                )
            updated = update(current)
            self.wallets[wallet_id] = updated
            return updated

    @contextmanager
    def wallet_lock(self, wallet_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._wallet_locks.setdefault(wallet_id, threading.RLock())
        with lock:
            yield

    def _pool_lock(self, promotion_id: str) -> threading.Lock:
        with self._guard:
            return self._pool_locks.setdefault(promotion_id, threading.Lock())
