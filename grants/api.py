import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .balance import parse_amount
from .config import get_settings
from .errors import GrantServiceError, InternalError, ServiceUnavailableError
from .models import (
    AttestationClaimRequest,
    AttestationProof,
    CaptchaChallenge,
    CaptchaClaimRequest,
    CaptchaProof,
    CaptchaSolution,
    ChallengeResponse,
    ClaimResult,
    CreatePromotionRequest,
    DiscoveredPromotion,
    IngestGrantsRequest,
    IngestResult,
    Promotion,
    PromotionListResponse,
    RedeemResult,
    RegisterWalletRequest,
    RequestContext,
    SetActiveRequest,
    WalletBalance,
    WalletResponse,
)
from .service import GrantService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> GrantService:
    return request.app.state.grant_service


def _http_error(e: GrantServiceError) -> HTTPException:
    headers = None
    if isinstance(e, ServiceUnavailableError):
        headers = {"Retry-After": str(e.retry_after)}
    if isinstance(e, InternalError):
        logger.error("Internal error: %s", e)
    return HTTPException(status_code=e.status_code, detail=str(e), headers=headers)


def _context(
    service: GrantService,
    protocol_version: int,
    safetynet_token: Optional[str],
    country: Optional[str],
    platform: Optional[str] = None,
    bypass_cooldown: Optional[str] = None,
) -> RequestContext:
    # a Safetynet token only ever comes from the android client
    if safetynet_token:
        platform = "android"
    return RequestContext(
        platform=platform or "desktop",
        country=country,
        protocol_version=protocol_version,
        bypass_cooldown=service.cooldown_bypassed(bypass_cooldown),
    )


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "grant-ledger"}


@router.post("/v1/promotions", response_model=Promotion, status_code=status.HTTP_201_CREATED, tags=["Promotions"])
def create_promotion(request: CreatePromotionRequest, service: GrantService = Depends(get_service)):
    try:
        return service.create_promotion(request)
    except GrantServiceError as e:
        raise _http_error(e)


@router.patch("/v1/promotions/{promotion_id}", response_model=Promotion, tags=["Promotions"])
def set_promotion_active(promotion_id: str, request: SetActiveRequest, service: GrantService = Depends(get_service)):
    try:
        return service.set_promotion_active(promotion_id, request.active)
    except GrantServiceError as e:
        raise _http_error(e)


@router.post("/v4/grants", response_model=IngestResult, tags=["Grants"])
def upload_grants(request: IngestGrantsRequest, service: GrantService = Depends(get_service)) -> IngestResult:
    try:
        return service.ingest(request)
    except GrantServiceError as e:
        raise _http_error(e)


@router.get("/v4/grants", response_model=PromotionListResponse, tags=["Grants"])
def list_grants(
    payment_id: Optional[str] = Query(None, alias="paymentId"),
    bypass_cooldown: Optional[str] = Query(None, alias="bypassCooldown"),
    platform: Optional[str] = Query(None),
    safetynet_token: Optional[str] = Header(None, alias="Safetynet-Token"),
    country: Optional[str] = Header(None, alias="Fastly-GeoIP-CountryCode"),
    service: GrantService = Depends(get_service),
) -> PromotionListResponse:
    context = _context(service, 4, safetynet_token, country, platform, bypass_cooldown)
    try:
        promotions = service.discover(context, wallet_id=payment_id)
    except GrantServiceError as e:
        raise _http_error(e)
    if not promotions:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No promotions available")
    return PromotionListResponse(grants=promotions)


@router.get("/v5/grants", response_model=DiscoveredPromotion, response_model_exclude_none=True, tags=["Grants"])
def available_grant(
    payment_id: Optional[str] = Query(None, alias="paymentId"),
    bypass_cooldown: Optional[str] = Query(None, alias="bypassCooldown"),
    platform: Optional[str] = Query(None),
    safetynet_token: Optional[str] = Header(None, alias="Safetynet-Token"),
    country: Optional[str] = Header(None, alias="Fastly-GeoIP-CountryCode"),
    service: GrantService = Depends(get_service),
) -> DiscoveredPromotion:
    context = _context(service, 5, safetynet_token, country, platform, bypass_cooldown)
    try:
        return service.discover_one(context, wallet_id=payment_id)
    except GrantServiceError as e:
        raise _http_error(e)


@router.get("/v1/attestations/{payment_id}", response_model=ChallengeResponse, tags=["Challenges"])
def issue_attestation(payment_id: str, service: GrantService = Depends(get_service)) -> ChallengeResponse:
    try:
        return service.issue_challenge(payment_id)
    except GrantServiceError as e:
        raise _http_error(e)


@router.get("/v4/captchas/{payment_id}", response_model=CaptchaChallenge, tags=["Challenges"])
def issue_captcha(payment_id: str, service: GrantService = Depends(get_service)) -> CaptchaChallenge:
    try:
        return service.issue_captcha(payment_id)
    except GrantServiceError as e:
        raise _http_error(e)


@router.post("/v4/captchas/{payment_id}/solution", status_code=status.HTTP_204_NO_CONTENT, tags=["Challenges"])
def solve_captcha(payment_id: str, solution: CaptchaSolution, service: GrantService = Depends(get_service)):
    try:
        service.solve(payment_id, solution)
    except GrantServiceError as e:
        raise _http_error(e)


@router.put("/v2/grants/{payment_id}", response_model=ClaimResult, tags=["Grants"])
def claim_with_captcha(
    payment_id: str,
    request: CaptchaClaimRequest,
    country: Optional[str] = Header(None, alias="Fastly-GeoIP-CountryCode"),
    service: GrantService = Depends(get_service),
) -> ClaimResult:
    context = _context(service, 2, None, country)
    try:
        return service.claim(payment_id, request.promotion_id, CaptchaProof(request.captcha_response), context)
    except GrantServiceError as e:
        raise _http_error(e)


@router.put("/v3/grants/{payment_id}", response_model=ClaimResult, tags=["Grants"])
def claim_with_attestation(
    payment_id: str,
    request: AttestationClaimRequest,
    safetynet_token: str = Header(..., alias="Safetynet-Token"),
    country: Optional[str] = Header(None, alias="Fastly-GeoIP-CountryCode"),
    service: GrantService = Depends(get_service),
) -> ClaimResult:
    context = _context(service, 3, safetynet_token, country)
    try:
        return service.claim(payment_id, request.promotion_id, AttestationProof(safetynet_token), context)
    except GrantServiceError as e:
        raise _http_error(e)


@router.put("/v1/wallets/{payment_id}", response_model=WalletResponse, tags=["Wallets"])
def register_wallet(
    payment_id: str, request: RegisterWalletRequest, service: GrantService = Depends(get_service)
) -> WalletResponse:
    try:
        wallet = service.register_wallet(payment_id, request.provider_id)
    except GrantServiceError as e:
        raise _http_error(e)
    return WalletResponse(wallet_id=wallet.wallet_id, provider_id=wallet.provider_id, cohort=wallet.cohort)


@router.get("/v2/wallet/{payment_id}", response_model=WalletBalance, response_model_exclude_none=True, tags=["Wallets"])
def wallet_balance(
    payment_id: str,
    refresh: bool = False,
    amount: Optional[str] = None,
    service: GrantService = Depends(get_service),
) -> WalletBalance:
    try:
        return service.get_balance(payment_id, refresh=refresh, expected_amount=parse_amount(amount))
    except GrantServiceError as e:
        raise _http_error(e)


@router.get("/v2/wallet/{payment_id}/balance", response_model=WalletBalance, response_model_exclude_none=True, tags=["Wallets"])
def cached_balance(payment_id: str, service: GrantService = Depends(get_service)) -> WalletBalance:
    try:
        return service.get_balance(payment_id)
    except GrantServiceError as e:
        raise _http_error(e)


@router.delete("/v2/wallet/{payment_id}/balance", tags=["Wallets"])
def invalidate_balance(payment_id: str, service: GrantService = Depends(get_service)):
    try:
        service.invalidate_balance(payment_id)
    except GrantServiceError as e:
        raise _http_error(e)
    return {"status": "invalidated"}


@router.post("/v2/wallet/{payment_id}/redeem", response_model=RedeemResult, tags=["Wallets"])
def redeem_grants(payment_id: str, service: GrantService = Depends(get_service)) -> RedeemResult:
    try:
        return service.redeem(payment_id)
    except GrantServiceError as e:
        raise _http_error(e)


def create_app(service: Optional[GrantService] = None, root_path: str = "") -> FastAPI:
    settings = service.settings if service else get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Grant Ledger API",
        description="Promotion discovery, challenge-gated grant claims and wallet balances",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.grant_service = service or GrantService(settings=settings)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
