"""Plan catalog.

Static mapping from plan id to token allowance, limits, price and billing
interval, plus the one-off token packages and the generation token price
list. Built once at import and never mutated.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

from app.modules.billing.exceptions import InvalidPlanError

# Sentinel for unlimited allowances and limits
UNLIMITED = -1

CURRENCY = "KRW"


class PlanId(str, Enum):
    """Subscription plans."""
    FREE = "FREE"
    PERSONAL = "PERSONAL"
    HEAVY = "HEAVY"
    ENTERPRISE = "ENTERPRISE"


@dataclass(frozen=True)
class PlanDefinition:
    """Immutable plan definition."""
    plan_id: PlanId
    name: str
    token_allowance: int
    max_characters: int
    max_projects: int
    price_minor_units: int
    billing_interval_days: int
    daily_image_limit: int = UNLIMITED
    description: str = ""

    @property
    def is_free(self) -> bool:
        return self.price_minor_units == 0

    @property
    def has_unlimited_tokens(self) -> bool:
        return self.token_allowance == UNLIMITED

    def to_dict(self) -> dict:
        """Convert plan to dictionary for API response."""
        return {
            "id": self.plan_id.value,
            "name": self.name,
            "description": self.description,
            "price": self.price_minor_units,
            "currency": CURRENCY,
            "billing_interval_days": self.billing_interval_days,
            "limits": {
                "tokens": self.token_allowance,
                "max_characters": self.max_characters,
                "max_projects": self.max_projects,
                "daily_images": self.daily_image_limit,
            },
        }


def _build_catalog(*plans: PlanDefinition) -> Mapping[PlanId, PlanDefinition]:
    catalog = {plan.plan_id: plan for plan in plans}
    missing = [plan_id.value for plan_id in PlanId if plan_id not in catalog]
    if missing:
        raise RuntimeError(f"Plan catalog is missing definitions for: {', '.join(missing)}")
    return MappingProxyType(catalog)


PLAN_CATALOG: Mapping[PlanId, PlanDefinition] = _build_catalog(
    PlanDefinition(
        plan_id=PlanId.FREE,
        name="Free",
        token_allowance=10,
        max_characters=2,
        max_projects=3,
        price_minor_units=0,
        billing_interval_days=30,
        daily_image_limit=10,
        description="Try the studio for free",
    ),
    PlanDefinition(
        plan_id=PlanId.PERSONAL,
        name="Personal",
        token_allowance=500_000,
        max_characters=3,
        max_projects=UNLIMITED,
        price_minor_units=30_000,
        billing_interval_days=30,
        daily_image_limit=20_000,
        description="For creators who publish regularly",
    ),
    PlanDefinition(
        plan_id=PlanId.HEAVY,
        name="Heavy",
        token_allowance=2_000_000,
        max_characters=5,
        max_projects=UNLIMITED,
        price_minor_units=100_000,
        billing_interval_days=30,
        daily_image_limit=80_000,
        description="For professional creators",
    ),
    PlanDefinition(
        plan_id=PlanId.ENTERPRISE,
        name="Enterprise",
        token_allowance=UNLIMITED,
        max_characters=UNLIMITED,
        max_projects=UNLIMITED,
        price_minor_units=300_000,
        billing_interval_days=30,
        daily_image_limit=UNLIMITED,
        description="Unlimited generation for studios and teams",
    ),
)


def find_plan(plan_id: Union[str, PlanId, None]) -> Optional[PlanDefinition]:
    """Look up a plan, returning None for unknown ids."""
    if plan_id is None:
        return None
    try:
        return PLAN_CATALOG[PlanId(plan_id)]
    except ValueError:
        return None


def get_plan(plan_id: Union[str, PlanId, None]) -> PlanDefinition:
    """Look up a plan.

    Raises:
        InvalidPlanError: if the id is not in the catalog
    """
    plan = find_plan(plan_id)
    if plan is None:
        raise InvalidPlanError(plan_id)
    return plan


# ==================== Token Packages ====================

@dataclass(frozen=True)
class TokenPackage:
    """One-off token package bought with the stored payment method."""
    package_id: str
    name: str
    tokens: int
    price_minor_units: int

    def to_dict(self) -> dict:
        return {
            "id": self.package_id,
            "name": self.name,
            "tokens": self.tokens,
            "price": self.price_minor_units,
            "currency": CURRENCY,
        }


TOKEN_PACKAGES: Mapping[str, TokenPackage] = MappingProxyType({
    package.package_id: package
    for package in (
        TokenPackage("small", "Starter pack", 100, 5_000),
        TokenPackage("medium", "Standard pack", 500, 20_000),
        TokenPackage("large", "Pro pack", 1_200, 40_000),
        TokenPackage("mega", "Mega pack", 3_000, 90_000),
    )
})


def get_token_package(package_id: str) -> TokenPackage:
    """Look up a token package.

    Raises:
        InvalidPlanError: if the package does not exist
    """
    package = TOKEN_PACKAGES.get(package_id)
    if package is None:
        raise InvalidPlanError(package_id, f"Invalid token package: {package_id}")
    return package


# ==================== Generation Pricing ====================

TOKENS_PER_IMAGE = Decimal("1")
HIGH_RESOLUTION_TOKENS = Decimal("0.5")
CHARACTER_SAVE_TOKENS = Decimal("0.2")

# Warn when fewer than this many images can still be generated
LOW_BALANCE_IMAGE_THRESHOLD = 5


def calculate_generation_cost(
    image_count: int,
    high_resolution: bool = False,
    save_character: bool = False,
) -> int:
    """Token cost of a generation request, rounded up to a whole token."""
    if image_count < 1:
        raise ValueError("image_count must be at least 1")

    cost = image_count * TOKENS_PER_IMAGE
    if high_resolution:
        cost += image_count * HIGH_RESOLUTION_TOKENS
    if save_character:
        cost += CHARACTER_SAVE_TOKENS
    return math.ceil(cost)


def images_affordable(tokens_remaining: int) -> int:
    """Number of standard images the remaining balance pays for."""
    if tokens_remaining == UNLIMITED:
        return UNLIMITED
    return int(Decimal(max(tokens_remaining, 0)) // TOKENS_PER_IMAGE)


# ==================== Referrals ====================

REFERRER_BONUS_TOKENS = 20
REFERRED_BONUS_TOKENS = 10
