"""Token pricing for generation requests.

Pure functions, no I/O. Resolution order:

1. A template cost override wins outright.
2. If a style or platform tag is given: ceil(BASE_COST x style x platform),
   unknown tags price at 1.0.
3. With neither tag: flat lookup by size, DEFAULT_SIZE_COST when unknown.
"""

from decimal import Decimal, ROUND_UP
from typing import Optional

from app.schemas.generation import GenerationMode

BASE_COST = Decimal("30")
MIN_COST = 1
DEFAULT_MULTIPLIER = Decimal("1.0")

STYLE_MULTIPLIERS: dict[str, Decimal] = {
    "realistic": Decimal("1.0"),
    "photographic": Decimal("1.2"),
    "artistic": Decimal("1.2"),
    "digital-art": Decimal("1.1"),
    "anime": Decimal("1.1"),
    "cartoon": Decimal("1.0"),
    "fantasy": Decimal("1.3"),
    "minimalist": Decimal("0.8"),
    "vintage": Decimal("1.1"),
    "modern": Decimal("1.0"),
    "abstract": Decimal("1.2"),
}

PLATFORM_MULTIPLIERS: dict[str, Decimal] = {
    "instagram": Decimal("1.0"),
    "facebook": Decimal("1.0"),
    "twitter": Decimal("0.9"),
    "linkedin": Decimal("1.1"),
    "pinterest": Decimal("1.0"),
    "tiktok": Decimal("1.2"),
}

SIZE_COSTS: dict[str, int] = {
    "1024x1024": 25,
    "1024x1792": 35,
    "1792x1024": 35,
}
DEFAULT_SIZE_COST = 25


def style_multiplier(style: Optional[str]) -> Decimal:
    """Multiplier for a style tag (1.0 when unknown)."""
    if not style:
        return DEFAULT_MULTIPLIER
    return STYLE_MULTIPLIERS.get(style.strip().lower(), DEFAULT_MULTIPLIER)


def platform_multiplier(platform: Optional[str]) -> Decimal:
    """Multiplier for a platform tag (1.0 when unknown)."""
    if not platform:
        return DEFAULT_MULTIPLIER
    return PLATFORM_MULTIPLIERS.get(platform.strip().lower(), DEFAULT_MULTIPLIER)


def size_cost(size: Optional[str]) -> int:
    """Flat cost for a size string."""
    return SIZE_COSTS.get((size or "").strip().lower(), DEFAULT_SIZE_COST)


def price(
    mode: GenerationMode,
    style: Optional[str] = None,
    platform: Optional[str] = None,
    size: Optional[str] = None,
    template_cost_override: Optional[int] = None,
) -> int:
    """Compute the token cost of a generation request.

    All modes share the same formula; ``mode`` is accepted so callers
    never have to special-case it and so per-mode pricing can be added
    here alone.

    Args:
        mode: Generation mode
        style: Style tag, unknown values price at 1.0
        platform: Platform tag, unknown values price at 1.0
        size: Target size, used only when neither tag is present
        template_cost_override: Negotiated template price

    Returns:
        Integer token cost, never below MIN_COST
    """
    if template_cost_override is not None:
        return max(MIN_COST, int(template_cost_override))

    if style or platform:
        raw = BASE_COST * style_multiplier(style) * platform_multiplier(platform)
        cost = int(raw.quantize(Decimal("1"), rounding=ROUND_UP))
    else:
        cost = size_cost(size)

    return max(MIN_COST, cost)


def price_breakdown(
    mode: GenerationMode,
    style: Optional[str] = None,
    platform: Optional[str] = None,
    size: Optional[str] = None,
    template_cost_override: Optional[int] = None,
) -> dict:
    """Explain how ``price`` arrived at its number (for cost estimates)."""
    if template_cost_override is not None:
        method = "template"
    elif style or platform:
        method = "multiplier"
    else:
        method = "size"

    return {
        "method": method,
        "base_cost": int(BASE_COST),
        "style_multiplier": float(style_multiplier(style)),
        "platform_multiplier": float(platform_multiplier(platform)),
        "size_cost": size_cost(size),
        "template_cost": template_cost_override,
        "total": price(mode, style, platform, size, template_cost_override),
    }
