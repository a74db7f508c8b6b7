"""
Unit Tests for the claim flow

Tests cover:
1. Captcha and attestation claims
2. Exactly-once claims (sequential and concurrent)
3. Ordered rejection reasons
4. Grant pool bookkeeping on failure
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from grants.errors import (
    BadRequestError,
    ConflictError,
    GoneError,
    GrantServiceError,
    InternalError,
    InvalidChallengeError,
    NotFoundError,
    UnauthorizedError,
)
from grants.models import AttestationProof, CaptchaProof, CaptchaSolution, IngestGrantsRequest, PromotionType, RequestContext

from .conftest import NOW

DESKTOP = RequestContext(platform="desktop")
ANDROID = RequestContext(platform="android")


def captcha_proof(service, wallet_id):
    service.issue_captcha(wallet_id)
    return CaptchaProof(service.get_wallet(wallet_id).captcha)


class TestCaptchaClaim:
    """Claims proven with the legacy captcha."""

    def test_claim_attaches_grant(self, service, seed):
        seed("promo-1")
        service.register_wallet("w-1")

        result = service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

        wallet = service.get_wallet("w-1")
        assert result.grant_id == "promo-1-grant-0"
        assert result.cohort == "control"
        assert [c.grant.grant_id for c in wallet.claimed_grants] == ["promo-1-grant-0"]
        assert wallet.last_claim_at == NOW
        assert service.storage.claimed_by["promo-1-grant-0"] == "w-1"
        assert service.storage.remaining_grants("promo-1") == 0

    def test_stored_solution_used_when_none_submitted(self, service, seed):
        seed("promo-1")
        service.register_wallet("w-1")
        service.issue_captcha("w-1")
        service.solve("w-1", service.get_wallet("w-1").captcha)

        result = service.claim("w-1", "promo-1", CaptchaProof(), DESKTOP)

        assert result.promotion_id == "promo-1"

    def test_wrong_answer_not_found(self, service, seed):
        seed("promo-1")
        service.register_wallet("w-1")
        service.issue_captcha("w-1")
        answer = service.get_wallet("w-1").captcha

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", CaptchaProof(CaptchaSolution(x=answer.x + 1, y=answer.y)), DESKTOP)

        assert service.get_wallet("w-1").claimed_grants == ()

    def test_solved_captcha_is_single_use(self, service, seed):
        seed("promo-1")
        service.register_wallet("w-1")
        service.issue_captcha("w-1")
        answer = service.get_wallet("w-1").captcha

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", CaptchaProof(CaptchaSolution(x=answer.x + 1, y=answer.y)), DESKTOP)
        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", CaptchaProof(answer), DESKTOP)

        assert service.get_wallet("w-1").captcha is None


class TestAttestationClaim:
    """Claims proven with a signed attestation carrying the wallet nonce."""

    def test_claim_with_matching_nonce(self, service, seed, attest):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        nonce = service.issue_challenge("w-1").nonce

        result = service.claim("w-1", "promo-1", AttestationProof(attest(nonce)), ANDROID)

        assert result.cohort == "safetynet"
        assert service.get_wallet("w-1").nonce is None

    def test_wrong_nonce(self, service, seed, attest):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        service.issue_challenge("w-1")

        with pytest.raises(InvalidChallengeError):
            service.claim("w-1", "promo-1", AttestationProof(attest("some-other-nonce")), ANDROID)

    def test_nonce_cleared_after_failed_attempt(self, service, seed, attest):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        nonce = service.issue_challenge("w-1").nonce

        with pytest.raises(InvalidChallengeError):
            service.claim("w-1", "promo-1", AttestationProof(attest("guess")), ANDROID)
        with pytest.raises(InvalidChallengeError):
            service.claim("w-1", "promo-1", AttestationProof(attest(nonce)), ANDROID)

    def test_expired_nonce(self, service, seed, attest, clock, settings):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        nonce = service.issue_challenge("w-1").nonce
        clock.advance(settings.challenge_ttl_seconds + 1)

        with pytest.raises(InvalidChallengeError):
            service.claim("w-1", "promo-1", AttestationProof(attest(nonce)), ANDROID)

    def test_untrusted_signature(self, service, seed, attest):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        nonce = service.issue_challenge("w-1").nonce
        token = attest(nonce, key=Ed25519PrivateKey.generate())

        with pytest.raises(UnauthorizedError) as excinfo:
            service.claim("w-1", "promo-1", AttestationProof(token), ANDROID)

        assert not isinstance(excinfo.value, InvalidChallengeError)

    def test_cohort_kept_from_first_claim(self, service, seed, attest):
        seed("promo-android", platform="android")
        seed("promo-any")
        service.register_wallet("w-1")
        service.claim("w-1", "promo-android", AttestationProof(attest(service.issue_challenge("w-1").nonce)), ANDROID)

        result = service.claim("w-1", "promo-any", captcha_proof(service, "w-1"), ANDROID)

        assert result.cohort == "safetynet"


class TestExactlyOnce:
    """A (wallet, promotion) pair is claimed at most once."""

    def test_second_claim_conflicts(self, service, seed):
        seed("promo-1", grants=2)
        service.register_wallet("w-1")
        service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

        with pytest.raises(ConflictError):
            service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

        assert len(service.get_wallet("w-1").claimed_grants) == 1
        assert service.storage.remaining_grants("promo-1") == 1

    def test_concurrent_claims_one_success(self, service, seed):
        seed("promo-1", grants=5)
        service.register_wallet("w-1")
        proof = captcha_proof(service, "w-1")

        def attempt(_):
            try:
                return service.claim("w-1", "promo-1", proof, DESKTOP)
            except GrantServiceError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, range(2)))

        successes = [o for o in outcomes if not isinstance(o, GrantServiceError)]
        assert len(successes) == 1
        assert len(service.get_wallet("w-1").claimed_grants) == 1
        assert service.storage.remaining_grants("promo-1") == 4

    def test_wallets_claim_distinct_grants(self, service, seed):
        seed("promo-1", grants=8)
        wallet_ids = [f"w-{i}" for i in range(8)]
        proofs = {}
        for wallet_id in wallet_ids:
            service.register_wallet(wallet_id)
            proofs[wallet_id] = captcha_proof(service, wallet_id)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda w: service.claim(w, "promo-1", proofs[w], DESKTOP), wallet_ids
            ))

        assert len({r.grant_id for r in results}) == 8
        assert service.storage.remaining_grants("promo-1") == 0

    def test_ugp_and_ads_tracked_independently(self, service, seed):
        seed("promo-ugp")
        seed("promo-ads", type=PromotionType.ADS, provider_id="provider-1")
        service.register_wallet("w-1", provider_id="provider-1")

        service.claim("w-1", "promo-ads", captcha_proof(service, "w-1"), DESKTOP)
        service.claim("w-1", "promo-ugp", captcha_proof(service, "w-1"), DESKTOP)

        assert [c.type for c in service.get_wallet("w-1").claimed_grants] == ["ads", "ugp"]


class TestRejections:
    """Ordered validation before any grant is taken."""

    def test_unknown_wallet(self, service, seed):
        seed("promo-1")

        with pytest.raises(NotFoundError):
            service.claim("nope", "promo-1", CaptchaProof(), DESKTOP)

    def test_inactive_promotion(self, service, seed):
        seed("promo-1")
        service.set_promotion_active("promo-1", False)
        service.register_wallet("w-1")

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

    def test_android_grant_with_desktop_request(self, service, seed):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

    def test_refused_region(self, service, seed):
        seed("promo-1")
        service.register_wallet("w-1")
        proof = captcha_proof(service, "w-1")

        with pytest.raises(BadRequestError):
            service.claim("w-1", "promo-1", proof, RequestContext(platform="desktop", country="US"))

        # the challenge is left intact when validation stops early
        assert service.get_wallet("w-1").captcha == proof.solution

    def test_ads_without_provider_grant_is_gone(self, service, seed):
        seed("promo-ads", type=PromotionType.ADS, provider_id="provider-1")
        service.register_wallet("w-1", provider_id="provider-2")

        with pytest.raises(GoneError):
            service.claim("w-1", "promo-ads", captcha_proof(service, "w-1"), DESKTOP)

    def test_exhausted_pool(self, service, seed):
        seed("promo-1", grants=1)
        for wallet_id in ("w-1", "w-2"):
            service.register_wallet(wallet_id)
        service.claim("w-1", "promo-1", captcha_proof(service, "w-1"), DESKTOP)

        with pytest.raises(NotFoundError):
            service.claim("w-2", "promo-1", captcha_proof(service, "w-2"), DESKTOP)

    def test_expired_grant_never_attached(self, service, seed, mint_grant, clock):
        seed("promo-1", grants=0)
        service.ingest(IngestGrantsRequest(grants=[mint_grant("short", "promo-1", expiry_time=int(NOW) + 60)]))
        service.register_wallet("w-1")
        proof = captcha_proof(service, "w-1")
        clock.advance(60)

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", proof, DESKTOP)

        assert service.get_wallet("w-1").claimed_grants == ()


class TestCohort:
    """The cohort is earned by verification, even when no grant is left to take."""

    def test_cohort_set_when_pool_drained_after_verification(self, service, seed, monkeypatch):
        seed("promo-1")
        service.register_wallet("w-1")
        proof = captcha_proof(service, "w-1")
        monkeypatch.setattr(service.storage, "take_grant", lambda *args: None)

        with pytest.raises(NotFoundError):
            service.claim("w-1", "promo-1", proof, DESKTOP)

        wallet = service.get_wallet("w-1")
        assert wallet.cohort == "control"
        assert wallet.claimed_grants == ()

    def test_failed_verification_sets_no_cohort(self, service, seed, attest):
        seed("promo-1", platform="android")
        service.register_wallet("w-1")
        service.issue_challenge("w-1")

        with pytest.raises(InvalidChallengeError):
            service.claim("w-1", "promo-1", AttestationProof(attest("guess")), ANDROID)

        assert service.get_wallet("w-1").cohort is None


class TestWriteFailure:
    """A failed wallet write returns the grant to the pool."""

    def test_grant_released_on_internal_error(self, service, seed, monkeypatch):
        seed("promo-1")
        service.register_wallet("w-1")
        proof = captcha_proof(service, "w-1")
        original = service.storage.update_wallet

        def failing_update(wallet_id, update, expected_version=None):
            if getattr(update, "__qualname__", "").startswith("with_claim"):
                raise OSError("disk full")
            return original(wallet_id, update, expected_version)

        monkeypatch.setattr(service.storage, "update_wallet", failing_update)

        with pytest.raises(InternalError):
            service.claim("w-1", "promo-1", proof, DESKTOP)

        assert service.storage.remaining_grants("promo-1") == 1
        assert "promo-1-grant-0" not in service.storage.claimed_by
