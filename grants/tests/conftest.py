import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from grants.balance import InMemorySettlement
from grants.config import Settings
from grants.models import PROBI_PER_TOKEN, CreatePromotionRequest, IngestGrantsRequest, PromotionType
from grants.service import GrantService


NOW = 1_700_000_000.0
DAY = 24 * 60 * 60
BYPASS_TOKEN = "let-me-through"
THIRTY_BAT = 30 * PROBI_PER_TOKEN


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def public_hex(key: Ed25519PrivateKey) -> str:
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


def sign_jws(key: Ed25519PrivateKey, payload: dict) -> str:
    return jwt.encode(payload, key, algorithm="EdDSA")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def grant_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def attestation_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def settings(grant_key, attestation_key):
    return Settings(
        _env_file=None,
        grant_public_keys=[public_hex(grant_key)],
        attestation_public_keys=[public_hex(attestation_key)],
        cooldown_bypass_token=BYPASS_TOKEN,
    )


@pytest.fixture
def settlement(settings):
    return InMemorySettlement(retry_after=settings.settlement_retry_after_seconds)


@pytest.fixture
def service(settings, settlement, clock):
    return GrantService(settlement=settlement, settings=settings, clock=clock)


@pytest.fixture
def mint_grant(grant_key):
    """Signed grant token, mature now and expiring in 180 days unless overridden."""

    def mint(
        grant_id: str,
        promotion_id: str,
        probi: int = THIRTY_BAT,
        maturity_time: int = int(NOW) - DAY,
        expiry_time: int = int(NOW) + 180 * DAY,
        provider_id=None,
        key=None,
        **extra,
    ) -> str:
        payload = {
            "grantId": grant_id,
            "promotionId": promotion_id,
            "altcurrency": "BAT",
            "probi": str(probi),
            "maturityTime": maturity_time,
            "expiryTime": expiry_time,
            **extra,
        }
        if provider_id is not None:
            payload["providerId"] = provider_id
        return sign_jws(key or grant_key, payload)

    return mint


@pytest.fixture
def attest(attestation_key):
    def attest(nonce: str, key=None) -> str:
        return sign_jws(key or attestation_key, {"nonce": nonce, "ctsProfileMatch": True})

    return attest


@pytest.fixture
def seed(service, mint_grant):
    """Create a promotion and upload ``grants`` signed grants for it."""

    def seed(
        promotion_id: str = "promo-ugp",
        type: PromotionType = PromotionType.UGP,
        grants: int = 1,
        probi: int = THIRTY_BAT,
        provider_id=None,
        **fields,
    ):
        service.create_promotion(CreatePromotionRequest(promotion_id=promotion_id, type=type, **fields))
        tokens = [
            mint_grant(f"{promotion_id}-grant-{i}", promotion_id, probi=probi, provider_id=provider_id)
            for i in range(grants)
        ]
        if tokens:
            service.ingest(IngestGrantsRequest(grants=tokens))
        return service.get_promotion(promotion_id)

    return seed
