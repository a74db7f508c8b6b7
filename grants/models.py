from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


PROBI_PLACES = 18
PROBI_PER_TOKEN = 10 ** PROBI_PLACES


class PromotionType(str, Enum):
    UGP = "ugp"
    ADS = "ads"
    ANDROID = "android"


class GrantClass(str, Enum):
    UGP = "ugp"
    ADS = "ads"


class GeoMode(str, Enum):
    ANYWHERE = "anywhere"
    INCLUDE = "include"
    EXCLUDE = "exclude"


class Cohort(str, Enum):
    CONTROL = "control"
    SAFETYNET = "safetynet"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoRule(CamelModel):
    """Country gate for a promotion: anywhere, an allow list or a deny list."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    mode: GeoMode = GeoMode.ANYWHERE
    countries: tuple[str, ...] = ()

    @field_validator("countries", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            value = [value]
        return tuple(c.strip().upper() for c in value if c and c.strip())

    def admits(self, country: Optional[str]) -> bool:
        if self.mode == GeoMode.ANYWHERE:
            return True
        code = country.strip().upper() if country else None
        if self.mode == GeoMode.INCLUDE:
            return code is not None and code in self.countries
        # an unknown country is never inside a deny list
        return code is None or code not in self.countries

    @classmethod
    def anywhere(cls) -> "GeoRule":
        return cls()

    @classmethod
    def excluding(cls, countries) -> "GeoRule":
        return cls(mode=GeoMode.EXCLUDE, countries=countries)

    @classmethod
    def including(cls, countries) -> "GeoRule":
        return cls(mode=GeoMode.INCLUDE, countries=countries)


class PromotionBase(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    promotion_id: str
    platform: str = ""
    active: bool = True
    priority: int = 0
    protocol_version: int = 1
    minimum_reconcile_timestamp: int = 0
    geo: GeoRule = Field(default_factory=GeoRule)
    sequence: int = 0

    @property
    def grant_class(self) -> GrantClass:
        return GrantClass.ADS if self.type == PromotionType.ADS.value else GrantClass.UGP

    @property
    def display_type(self) -> str:
        if self.type == PromotionType.UGP.value and self.platform == "android":
            return PromotionType.ANDROID.value
        return self.type

    def visible_on(self, platform: str) -> bool:
        return not self.platform or self.platform == platform

    def reconcilable(self, now: float) -> bool:
        return self.minimum_reconcile_timestamp <= now * 1000


class UgpPromotion(PromotionBase):
    type: Literal["ugp"] = "ugp"


class AdsPromotion(PromotionBase):
    type: Literal["ads"] = "ads"


class AndroidPromotion(PromotionBase):
    type: Literal["android"] = "android"
    platform: str = "android"


Promotion = Annotated[Union[UgpPromotion, AdsPromotion, AndroidPromotion], Field(discriminator="type")]
promotion_adapter = TypeAdapter(Promotion)


class Grant(CamelModel):
    """A verified grant payload. Amounts are integer probi, never floats."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    grant_id: str
    promotion_id: str
    altcurrency: Optional[str] = None
    probi: int
    maturity_time: int
    expiry_time: int
    type: Optional[str] = None
    provider_id: Optional[str] = None
    token: str = Field(default="", repr=False)

    @field_validator("probi", mode="before")
    @classmethod
    def _exact_probi(cls, value):
        if isinstance(value, float):
            raise ValueError("probi must be an integer amount, not a float")
        if isinstance(value, str) and not value.isdigit():
            raise ValueError(f"probi must be a non-negative integer string, got {value!r}")
        return value

    @field_validator("probi")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("probi must not be negative")
        return value

    def is_expired(self, now: float) -> bool:
        return self.expiry_time <= now

    def is_mature(self, now: float) -> bool:
        return self.maturity_time <= now


class CaptchaSolution(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    x: int
    y: int


class ClaimedGrant(CamelModel):
    grant: Grant
    type: str
    claimed_at: float
    redeemed: bool = False


class GrantSummary(CamelModel):
    type: str
    altcurrency: str
    expiry_time: int
    probi: str


class BalanceCache(CamelModel):
    total: int
    card_balance: int = 0
    grants_snapshot: list[GrantSummary] = Field(default_factory=list)
    computed_at: float
    valid_until: float


class WalletState(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    wallet_id: str
    provider_id: Optional[str] = None
    nonce: Optional[str] = None
    nonce_issued_at: Optional[float] = None
    captcha: Optional[CaptchaSolution] = None
    captcha_issued_at: Optional[float] = None
    captcha_solution: Optional[CaptchaSolution] = None
    cohort: Optional[str] = None
    claimed_grants: tuple[ClaimedGrant, ...] = ()
    last_claim_at: Optional[float] = None
    balance_cache: Optional[BalanceCache] = None
    created_at: float = 0.0
    version: int = 0

    def has_claimed(self, promotion_id: str) -> bool:
        return any(c.grant.promotion_id == promotion_id for c in self.claimed_grants)

    def holds_grant(self, grant_id: str) -> bool:
        return any(c.grant.grant_id == grant_id for c in self.claimed_grants)

    def unredeemed(self) -> list[ClaimedGrant]:
        return [c for c in self.claimed_grants if not c.redeemed]

    def in_cooldown(self, now: float, cooldown_seconds: int) -> bool:
        if cooldown_seconds <= 0 or self.last_claim_at is None:
            return False
        return now - self.last_claim_at < cooldown_seconds


# Core request types


@dataclass(frozen=True)
class RequestContext:
    platform: str = ""
    country: Optional[str] = None
    protocol_version: int = 4
    bypass_cooldown: bool = False


@dataclass(frozen=True)
class CaptchaProof:
    solution: Optional[CaptchaSolution] = None
    kind: Literal["captcha"] = "captcha"


@dataclass(frozen=True)
class AttestationProof:
    token: str
    kind: Literal["attestation"] = "attestation"


ClaimProof = Union[CaptchaProof, AttestationProof]


# Boundary request models


class CreatePromotionRequest(CamelModel):
    promotion_id: Optional[str] = None
    type: PromotionType = PromotionType.UGP
    platform: str = ""
    active: bool = True
    priority: int = 0
    protocol_version: Optional[int] = None
    minimum_reconcile_timestamp: int = 0
    geo: Optional[GeoRule] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, json_schema_extra={
        "example": {
            "promotionId": "c96c39c8-77dd-4b2d-a8df-2ecf824bc9e9",
            "type": "ugp",
            "platform": "android",
            "active": True,
            "priority": 0,
            "protocolVersion": 4,
            "minimumReconcileTimestamp": 1526941400000,
        }
    })


class IngestGrantsRequest(CamelModel):
    grants: list[str] = Field(default_factory=list)
    promotions: list[CreatePromotionRequest] = Field(default_factory=list)


class SetActiveRequest(CamelModel):
    active: bool


class RegisterWalletRequest(CamelModel):
    provider_id: Optional[str] = None


class CaptchaClaimRequest(CamelModel):
    promotion_id: str
    captcha_response: Optional[CaptchaSolution] = None


class AttestationClaimRequest(CamelModel):
    promotion_id: str


# Responses


class DiscoveredPromotion(CamelModel):
    promotion_id: str
    type: str
    priority: int
    protocol_version: int
    minimum_reconcile_timestamp: int
    platform: str = ""
    altcurrency: str
    probi: str
    maturity_time: int
    expiry_time: int
    nonce: Optional[str] = None


class PromotionListResponse(CamelModel):
    grants: list[DiscoveredPromotion]


class ChallengeResponse(CamelModel):
    nonce: str


class CaptchaChallenge(CamelModel):
    captcha_id: str
    width: int
    height: int


class ClaimResult(CamelModel):
    wallet_id: str
    promotion_id: str
    grant_id: str
    type: str
    altcurrency: str
    probi: str
    expiry_time: int
    cohort: Optional[str] = None


class IngestResult(CamelModel):
    promotions_added: int
    grants_added: int
    grants_skipped: int


class WalletBalance(CamelModel):
    balance: str
    card_balance: str
    probi: str
    grants: Optional[list[GrantSummary]] = None


class RedeemResult(CamelModel):
    wallet_id: str
    probi: str
    grant_ids: list[str]


class WalletResponse(CamelModel):
    wallet_id: str
    provider_id: Optional[str] = None
    cohort: Optional[str] = None
