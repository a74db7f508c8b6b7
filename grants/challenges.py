import logging
import secrets
import time
from typing import Callable, Optional

from .config import Settings
from .errors import NotFoundError
from .models import CaptchaChallenge, CaptchaSolution, ChallengeResponse, WalletState
from .store import InMemoryStorage, with_captcha, with_challenge, with_solution

logger = logging.getLogger(__name__)

CAPTCHA_WIDTH = 300
CAPTCHA_HEIGHT = 300


class ChallengeIssuer:
    """Issues single-use anti-automation challenges bound to a wallet.

    A wallet holds at most one live challenge: issuing a nonce or a captcha
    replaces whatever was outstanding.
    """

    def __init__(self, storage: InMemoryStorage, settings: Settings, clock: Callable[[], float] = time.time):
        self.storage = storage
        self.settings = settings
        self.clock = clock

    def issue_challenge(self, wallet_id: str) -> ChallengeResponse:
        with self.storage.wallet_lock(wallet_id):
            wallet = self._wallet(wallet_id)
            nonce = secrets.token_urlsafe(24)
            while nonce == wallet.nonce:
                nonce = secrets.token_urlsafe(24)
            self.storage.update_wallet(wallet_id, with_challenge(nonce, self.clock()))
        logger.info("Issued attestation nonce for wallet %s", wallet_id)
        return ChallengeResponse(nonce=nonce)

    def issue_captcha(self, wallet_id: str) -> CaptchaChallenge:
        self._wallet(wallet_id)
        answer = CaptchaSolution(
            x=secrets.randbelow(CAPTCHA_WIDTH),
            y=secrets.randbelow(CAPTCHA_HEIGHT),
        )
        self.storage.update_wallet(wallet_id, with_captcha(answer, self.clock()))
        logger.info("Issued captcha for wallet %s", wallet_id)
        return CaptchaChallenge(captcha_id=secrets.token_hex(8), width=CAPTCHA_WIDTH, height=CAPTCHA_HEIGHT)

    def solve(self, wallet_id: str, solution: CaptchaSolution) -> None:
        """Record the submitted answer. Checked later, at claim time."""
        self.storage.update_wallet(wallet_id, with_solution(solution))

    def live_nonce(self, wallet: WalletState) -> Optional[str]:
        if wallet.nonce is None or self._expired(wallet.nonce_issued_at):
            return None
        return wallet.nonce

    def live_captcha(self, wallet: WalletState) -> Optional[CaptchaSolution]:
        if wallet.captcha is None or self._expired(wallet.captcha_issued_at):
            return None
        return wallet.captcha

    def _expired(self, issued_at: Optional[float]) -> bool:
        ttl = self.settings.challenge_ttl_seconds
        if ttl <= 0 or issued_at is None:
            return False
        return self.clock() - issued_at >= ttl

    def _wallet(self, wallet_id: str) -> WalletState:
        wallet = self.storage.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return wallet
