"""Bandwidth cost calculation from a versioned provider price table."""

import json
import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import PRICING_SETTINGS
from .exceptions import CostComputeError
from .models import CostItem, CostResult

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1e9
DAYS_PER_MONTH = 30
NETLIFY_PLANS = ('personal', 'pro', 'legacy')


@dataclass
class PricingOptions:
    region: Optional[str] = None
    netlify_plan: str = 'legacy'
    vercel_included_gb: float = 0
    use_cloudflare_argo: bool = False


@dataclass
class CostInput:
    provider: str
    breakdown: Sequence[Tuple[str, int]]
    window_days: Optional[float] = None
    options: PricingOptions = field(default_factory=PricingOptions)


def round_cents(value: float) -> float:
    """Round half-up to two decimals."""
    return float(Decimal(repr(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


def month_factor(window_days: Optional[float]) -> float:
    if not window_days or window_days <= 0:
        return 1.0
    return DAYS_PER_MONTH / window_days


def to_monthly_bytes(size: int, window_days: Optional[float]) -> int:
    return max(0, int(math.floor(size * month_factor(window_days) + 0.5)))


def normalize_provider(provider: str) -> str:
    key = (provider or '').strip().lower()
    if key in ('aws', 'cloudfront') or 'cloudfront' in key:
        return 'aws_cloudfront'
    return key


def load_price_table(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the JSON price table. Raises CostComputeError."""
    table_path = Path(path or PRICING_SETTINGS['price_table_path'])
    try:
        with open(table_path, 'r', encoding='utf-8') as f:
            table = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CostComputeError(f"Could not load price table {table_path}: {e}",
                               context={'path': str(table_path)}) from e
    if not isinstance(table, dict) or not isinstance(table.get('providers'), dict):
        raise CostComputeError(f"Price table {table_path} has no providers map",
                               context={'path': str(table_path)})
    return table


def price_table_version(path: Optional[str] = None) -> str:
    try:
        return str(load_price_table(path).get('version') or 'unknown')
    except CostComputeError:
        return 'unknown'


def blended_tier_rate(tiers: List[Dict[str, Any]], chargeable_bytes: int) -> float:
    """Average per-GB rate when chargeable_bytes is billed through volume tiers.

    Each tier is ``{"up_to_gb": <number or null>, "per_gb": <rate>}``, ordered.
    """
    remaining_gb = chargeable_bytes / BYTES_PER_GB
    if remaining_gb <= 0:
        return float(tiers[0].get('per_gb', 0)) if tiers else 0.0
    total_gb = remaining_gb
    cost = 0.0
    floor_gb = 0.0
    for tier in tiers:
        ceiling = tier.get('up_to_gb')
        span = remaining_gb if ceiling is None else min(remaining_gb, max(0.0, ceiling - floor_gb))
        cost += span * float(tier.get('per_gb', 0))
        remaining_gb -= span
        if ceiling is not None:
            floor_gb = ceiling
        if remaining_gb <= 0:
            break
    if remaining_gb > 0 and tiers:
        cost += remaining_gb * float(tiers[-1].get('per_gb', 0))
    return cost / total_gb


def _provider_rate(provider_key: str, table: Dict[str, Any], options: PricingOptions):
    """Return (rate_per_gb, tiers, free_allowance_bytes, notes) for a provider."""
    notes: List[str] = []
    tiers = None
    free_bytes = 0

    if provider_key == 'vercel':
        overage = (table.get('bandwidth') or {}).get('overage_per_gb')
        rate = overage if isinstance(overage, (int, float)) else PRICING_SETTINGS['vercel_default_overage_per_gb']
        included = options.vercel_included_gb or 0
        if included > 0:
            notes.append(f"Vercel included {included:g} GB applied before overage")
            free_bytes = int(included * BYTES_PER_GB)

    elif provider_key == 'aws_cloudfront':
        bandwidth = table.get('bandwidth') or {}
        region = options.region or PRICING_SETTINGS['cloudfront_default_region']
        region_table = (bandwidth.get('regions') or {}).get(region) or {}
        rate = region_table.get('after_first_tb_per_gb')
        if rate is None and region_table.get('tiers'):
            tiers = region_table['tiers']
        if rate is None:
            rate = PRICING_SETTINGS['cloudfront_default_per_gb']
        if bandwidth.get('first_1tb_free_per_month'):
            free_bytes = PRICING_SETTINGS['cloudfront_free_bytes']
            notes.append('CloudFront first 1TB/month free applied')

    elif provider_key == 'netlify':
        defaults = PRICING_SETTINGS['netlify_default_rates']
        plan = options.netlify_plan if options.netlify_plan in NETLIFY_PLANS else 'legacy'
        credit_rates = (table.get('credit_plans') or {}).get('effective_bandwidth_usd_per_gb') or {}
        if plan == 'personal':
            rate = credit_rates.get('personal', defaults['personal'])
            notes.append('Netlify Personal (credits) rate applied')
        elif plan == 'pro':
            rate = credit_rates.get('pro', defaults['pro'])
            notes.append('Netlify Pro (credits) rate applied')
        else:
            rate = (table.get('legacy_overage') or {}).get('effective_per_gb', defaults['legacy'])
            notes.append('Netlify legacy overage rate applied')

    elif provider_key == 'cloudflare':
        if options.use_cloudflare_argo:
            rate = (table.get('argo_smart_routing') or {}).get(
                'per_gb', PRICING_SETTINGS['cloudflare_default_argo_per_gb'])
            notes.append('Cloudflare Argo Smart Routing per-GB applied')
        else:
            rate = (table.get('cdn') or {}).get('per_gb', 0)
            if rate:
                notes.append(f"Cloudflare CDN rate of ${rate}/GB applied")
            else:
                notes.append('Cloudflare self-serve CDN bandwidth not metered (per GB = $0)')

    else:
        rate = PRICING_SETTINGS['generic_rate_per_gb']
        notes.append(f"Default generic rate applied for {provider_key}")

    return float(rate), tiers, free_bytes, notes


def allocate_free_allowance(monthly_bytes: List[int], free_bytes: int) -> List[int]:
    """Split free_bytes across categories in proportion to their monthly bytes.

    Shares are rounded half-up; the last category with bytes absorbs the rounding
    remainder so the applied total equals min(free_bytes, total monthly bytes).
    Returns the free bytes applied per category.
    """
    total = sum(monthly_bytes)
    if free_bytes <= 0 or total <= 0:
        return [0] * len(monthly_bytes)

    target = min(free_bytes, total)
    last_index = max(i for i, size in enumerate(monthly_bytes) if size > 0)
    applied = []
    used = 0
    for i, size in enumerate(monthly_bytes):
        if i == last_index:
            share = min(size, max(0, target - used))
        else:
            share = min(size, (2 * size * free_bytes + total) // (2 * total))
        used += share
        applied.append(share)
    return applied


def compute_bandwidth_costs(cost_input: CostInput, price_table: Dict[str, Any]) -> CostResult:
    """Compute monthly cost per breakdown category. Pure function."""
    currency = price_table.get('currency') or 'USD'
    provider_key = normalize_provider(cost_input.provider)
    provider_table = (price_table.get('providers') or {}).get(provider_key)

    categories = [(category, int(size or 0)) for category, size in cost_input.breakdown]
    if any(size < 0 for _, size in categories):
        raise CostComputeError("Breakdown byte counts must be non-negative",
                               context={'provider': cost_input.provider})
    monthly = [to_monthly_bytes(size, cost_input.window_days) for _, size in categories]

    if provider_table is None:
        return CostResult(
            currency=currency,
            total_cost=0.0,
            items=[CostItem(category, size, m, 0.0) for (category, size), m in zip(categories, monthly)],
            notes=[f"Unknown provider: {cost_input.provider}. No cost applied."],
        )

    rate, tiers, free_bytes, notes = _provider_rate(provider_key, provider_table, cost_input.options)
    free_applied = allocate_free_allowance(monthly, free_bytes)
    chargeable = [m - f for m, f in zip(monthly, free_applied)]
    if tiers:
        rate = blended_tier_rate(tiers, sum(chargeable))
        notes.append(f"CloudFront tiered rate blended to ${rate:.4f}/GB")

    items = [
        CostItem(category=category, bytes=size, monthly_bytes=m,
                 monthly_cost=round_cents(c / BYTES_PER_GB * rate))
        for (category, size), m, c in zip(categories, monthly, chargeable)
    ]
    total_cost = round_cents(sum(item.monthly_cost for item in items))
    logger.debug("%s cost: %d categories, rate %.4f/GB, total %.2f %s",
                 provider_key, len(items), rate, total_cost, currency)
    return CostResult(
        currency=currency,
        total_cost=total_cost,
        items=items,
        notes=notes,
        rate_per_gb=rate,
        free_allowance_bytes=sum(free_applied),
    )
