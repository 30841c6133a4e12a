"""Fee engine - platform fee calculation under every fee model still in use

Subscriptions keep the fee model they were created under for their whole life, so
several generations of pricing coexist:

- legacy (no stored model): flat percentage plus a fixed buffer, creator absorbs
- flat: per-purpose rate, fee mode chooses who pays, minimum-fee floor
- split_v1: 4%/4% split with a processor-cost buffer
- tiered_v2: marginal platform rates plus pass-through processing

Every function here is pure. Amounts are integers in minor currency units and every
rounding step is explicit round-half-up.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING
from typing import Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Number = Union[int, float, Decimal]

# Fee model tags stored on Subscription.fee_model / Payment.fee_model
FEE_MODEL_LEGACY = None
FEE_MODEL_FLAT = "flat"
FEE_MODEL_SPLIT_V1 = "split_v1"
FEE_MODEL_TIERED_V2 = "tiered_v2"

# Older tags written by earlier checkout versions
FEE_MODEL_ALIASES = {
    "percentage": FEE_MODEL_FLAT,
    "direct_v1": FEE_MODEL_SPLIT_V1,
    "progressive": FEE_MODEL_TIERED_V2,
    "progressive_v1": FEE_MODEL_TIERED_V2,
}

FEE_MODE_ABSORB = "absorb"
FEE_MODE_PASS_TO_SUBSCRIBER = "pass_to_subscriber"
FEE_MODE_SPLIT = "split"
FEE_MODES = (FEE_MODE_ABSORB, FEE_MODE_PASS_TO_SUBSCRIBER, FEE_MODE_SPLIT)

PURPOSE_SERVICE = "service"
PURPOSE_PERSONAL = "personal"

# Flat / legacy rates by purpose
FLAT_RATES = {
    PURPOSE_SERVICE: Decimal("0.08"),
    PURPOSE_PERSONAL: Decimal("0.10"),
}
LEGACY_FIXED_BUFFER_CENTS = 30

# Split model: each side pays 4%
SPLIT_RATE = Decimal("0.04")
CROSS_BORDER_BUFFER = Decimal("0.015")

# Share of a processor-buffer deficit charged to the subscriber side
SUBSCRIBER_DEFICIT_SHARE = Decimal("0.6")

# Processor fee estimates by currency: (percent, fixed minor units)
PROCESSOR_FEES: Dict[str, Tuple[Decimal, int]] = {
    "USD": (Decimal("0.029"), 30),
    "EUR": (Decimal("0.029"), 25),
    "GBP": (Decimal("0.029"), 20),
    "CAD": (Decimal("0.029"), 30),
    "AUD": (Decimal("0.029"), 30),
    "ZAR": (Decimal("0.029"), 500),
    "KES": (Decimal("0.015"), 5000),
    "NGN": (Decimal("0.015"), 10000),
    "GHS": (Decimal("0.019"), 0),
}
DEFAULT_PROCESSOR_FEE = (Decimal("0.029"), 30)

# Minimum platform margin kept after processor fees
MIN_MARGIN_CENTS = {
    "USD": 25,
    "EUR": 25,
    "GBP": 20,
    "CAD": 35,
    "AUD": 35,
    "ZAR": 500,
    "KES": 2500,
    "NGN": 25000,
    "GHS": 250,
}
DEFAULT_MIN_MARGIN = 25

# Flat model minimum fee floors
MIN_FEE_FLOOR_CENTS = {
    "USD": 50,
    "EUR": 50,
    "GBP": 40,
    "CAD": 65,
    "AUD": 70,
    "ZAR": 1000,
    "KES": 5000,
    "NGN": 25000,
    "GHS": 500,
}
DEFAULT_MIN_FEE_FLOOR = 50

# Tiered v2
TIER_STANDARD = "standard"
TIER_FOUNDING = "founding"
DIRECTION_RECIPIENT_PAYS = "recipient_pays"
DIRECTION_PAYER_PAYS = "payer_pays"

TIER1_LIMIT_CENTS = 50000
TIERED_PLATFORM_RATES = {
    TIER_STANDARD: (Decimal("0.05"), Decimal("0.02")),
    TIER_FOUNDING: (Decimal("0.03"), Decimal("0.01")),
}
MIN_PLATFORM_FEE_CENTS = 100
CROSS_BORDER_PROCESSING_SURCHARGE = Decimal("0.03")  # +2% cross-border, +1% FX


@dataclass(frozen=True)
class FeeCalculation:
    fee_cents: int
    subscriber_fee_cents: int
    creator_fee_cents: int
    effective_rate: float
    gross_cents: int
    net_cents: int
    base_cents: int
    currency: str
    fee_model: Optional[str]
    fee_mode: str
    purpose_type: str
    fee_was_capped: bool
    estimated_processor_fee: int
    estimated_margin: int


@dataclass(frozen=True)
class LegacyFee:
    fee_cents: int
    net_cents: int


@dataclass(frozen=True)
class TieredFeeCalculation:
    payer_pays_cents: int
    recipient_receives_cents: int
    platform_fee_cents: int
    processing_fee_cents: int
    total_fee_cents: int
    platform_fee_percent: float
    processing_fee_percent: float
    direction: str
    tier: str
    currency: str


@dataclass(frozen=True)
class Reversal:
    """Fee/net split of a refund or dispute amount"""
    amount_cents: int
    fee_cents: int
    net_cents: int
    subscriber_fee_cents: Optional[int] = None
    creator_fee_cents: Optional[int] = None


# ============================================================================
# ROUNDING AND LOOKUPS
# ============================================================================

def round_half_up(value: Number) -> int:
    """Round to the nearest integer, halves away from zero.

    The builtin round() uses banker's rounding and must not be used for money.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _validate_amount(amount_cents: int) -> None:
    if amount_cents < 0:
        raise ValueError("Amount cannot be negative")


def normalize_purpose(purpose: Optional[str]) -> str:
    return PURPOSE_SERVICE if purpose == PURPOSE_SERVICE else PURPOSE_PERSONAL


def normalize_fee_model(fee_model: Optional[str]) -> Optional[str]:
    """Map historical tag spellings onto the canonical fee model tags"""
    if not fee_model or fee_model == "legacy":
        return FEE_MODEL_LEGACY
    return FEE_MODEL_ALIASES.get(fee_model, fee_model)


def get_processor_fee(currency: str) -> Tuple[Decimal, int]:
    return PROCESSOR_FEES.get(currency.upper(), DEFAULT_PROCESSOR_FEE)


def estimate_processor_fee(gross_cents: int, currency: str) -> int:
    """Estimate what the payment processor keeps from a charge of gross_cents"""
    percent, fixed = get_processor_fee(currency)
    return round_half_up(Decimal(gross_cents) * percent) + fixed


def _effective_rate(fee_cents: int, amount_cents: int) -> float:
    return float(round(Decimal(fee_cents) / Decimal(amount_cents), 6))


def _zero_fee(currency: str, fee_model: Optional[str], fee_mode: str, purpose_type: str) -> FeeCalculation:
    return FeeCalculation(
        fee_cents=0,
        subscriber_fee_cents=0,
        creator_fee_cents=0,
        effective_rate=0.0,
        gross_cents=0,
        net_cents=0,
        base_cents=0,
        currency=currency,
        fee_model=fee_model,
        fee_mode=fee_mode,
        purpose_type=purpose_type,
        fee_was_capped=False,
        estimated_processor_fee=0,
        estimated_margin=0,
    )


# ============================================================================
# LEGACY FLAT
# ============================================================================

def calculate_legacy_fee(amount_cents: int, purpose: Optional[str] = None) -> LegacyFee:
    """Fee for subscriptions created before fee models were recorded.

    fee = round(amount * rate) + fixed buffer, deducted from the creator's amount.
    The fee never exceeds the amount itself.
    """
    _validate_amount(amount_cents)
    if amount_cents == 0:
        return LegacyFee(fee_cents=0, net_cents=0)

    rate = FLAT_RATES[normalize_purpose(purpose)]
    fee_cents = min(round_half_up(Decimal(amount_cents) * rate) + LEGACY_FIXED_BUFFER_CENTS, amount_cents)
    return LegacyFee(fee_cents=fee_cents, net_cents=amount_cents - fee_cents)


def _legacy_as_calculation(amount_cents: int, currency: str, purpose: Optional[str]) -> FeeCalculation:
    purpose_type = normalize_purpose(purpose)
    if amount_cents == 0:
        return _zero_fee(currency, FEE_MODEL_LEGACY, FEE_MODE_ABSORB, purpose_type)

    legacy = calculate_legacy_fee(amount_cents, purpose)
    processor_fee = estimate_processor_fee(amount_cents, currency)
    return FeeCalculation(
        fee_cents=legacy.fee_cents,
        subscriber_fee_cents=0,
        creator_fee_cents=legacy.fee_cents,
        effective_rate=_effective_rate(legacy.fee_cents, amount_cents),
        gross_cents=amount_cents,
        net_cents=legacy.net_cents,
        base_cents=amount_cents,
        currency=currency,
        fee_model=FEE_MODEL_LEGACY,
        fee_mode=FEE_MODE_ABSORB,
        purpose_type=purpose_type,
        fee_was_capped=False,
        estimated_processor_fee=processor_fee,
        estimated_margin=legacy.fee_cents - processor_fee,
    )


# ============================================================================
# FLAT V1 (TWO-SIDED)
# ============================================================================

def calculate_flat_fee(
    amount_cents: int,
    currency: str,
    purpose: Optional[str] = None,
    fee_mode: str = FEE_MODE_PASS_TO_SUBSCRIBER,
    is_cross_border: bool = False,
) -> FeeCalculation:
    """Flat per-purpose fee where fee_mode decides which side pays.

    absorb: gross = amount, net = amount - fee
    pass_to_subscriber: gross = amount + fee, net = amount

    The currency floor only applies when amount > 2x the floor, so micro-payments
    keep their proportional fee.
    """
    _validate_amount(amount_cents)
    if fee_mode == FEE_MODE_SPLIT:
        return calculate_split_fee(amount_cents, currency, purpose, is_cross_border)
    if fee_mode not in FEE_MODES:
        raise ValueError(f"Unknown fee mode: {fee_mode}")

    currency = currency.upper()
    purpose_type = normalize_purpose(purpose)
    if amount_cents == 0:
        return _zero_fee(currency, FEE_MODEL_FLAT, fee_mode, purpose_type)

    rate = FLAT_RATES[purpose_type]
    if is_cross_border:
        rate += CROSS_BORDER_BUFFER

    fee_cents = round_half_up(Decimal(amount_cents) * rate)
    floor = MIN_FEE_FLOOR_CENTS.get(currency, DEFAULT_MIN_FEE_FLOOR)
    floor_applied = False
    if amount_cents > 2 * floor and fee_cents < floor:
        fee_cents = floor
        floor_applied = True

    if fee_mode == FEE_MODE_ABSORB:
        gross_cents = amount_cents
        net_cents = amount_cents - fee_cents
        subscriber_fee, creator_fee = 0, fee_cents
    else:
        gross_cents = amount_cents + fee_cents
        net_cents = amount_cents
        subscriber_fee, creator_fee = fee_cents, 0

    processor_fee = estimate_processor_fee(gross_cents, currency)
    return FeeCalculation(
        fee_cents=fee_cents,
        subscriber_fee_cents=subscriber_fee,
        creator_fee_cents=creator_fee,
        effective_rate=_effective_rate(fee_cents, amount_cents),
        gross_cents=gross_cents,
        net_cents=net_cents,
        base_cents=amount_cents,
        currency=currency,
        fee_model=FEE_MODEL_FLAT,
        fee_mode=fee_mode,
        purpose_type=purpose_type,
        fee_was_capped=floor_applied,
        estimated_processor_fee=processor_fee,
        estimated_margin=fee_cents - processor_fee,
    )


# ============================================================================
# SPLIT V1
# ============================================================================

def calculate_split_fee(
    amount_cents: int,
    currency: str,
    purpose: Optional[str] = None,
    is_cross_border: bool = False,
) -> FeeCalculation:
    """4%/4% split between subscriber and creator with a processor buffer.

    If the naive split collects less than the estimated processor fee plus the
    currency's minimum margin, the deficit is added back: 60% (rounded up) to the
    subscriber side, the remainder to the creator side.

    Example (USD 100.00):
        subscriber pays 104.00, creator receives 96.00, platform keeps 8.00
    """
    _validate_amount(amount_cents)
    currency = currency.upper()
    purpose_type = normalize_purpose(purpose)
    if amount_cents == 0:
        return _zero_fee(currency, FEE_MODEL_SPLIT_V1, FEE_MODE_SPLIT, purpose_type)

    split_rate = SPLIT_RATE
    if is_cross_border:
        split_rate += CROSS_BORDER_BUFFER / 2

    subscriber_fee = round_half_up(Decimal(amount_cents) * split_rate)
    creator_fee = round_half_up(Decimal(amount_cents) * split_rate)
    total_fee = subscriber_fee + creator_fee

    processor_fee = estimate_processor_fee(amount_cents + subscriber_fee, currency)
    min_platform_fee = processor_fee + MIN_MARGIN_CENTS.get(currency, DEFAULT_MIN_MARGIN)

    fee_was_capped = False
    if total_fee < min_platform_fee:
        fee_was_capped = True
        deficit = min_platform_fee - total_fee
        subscriber_extra = _ceil(Decimal(deficit) * SUBSCRIBER_DEFICIT_SHARE)
        subscriber_fee += subscriber_extra
        creator_fee += deficit - subscriber_extra
        total_fee = subscriber_fee + creator_fee

    return FeeCalculation(
        fee_cents=total_fee,
        subscriber_fee_cents=subscriber_fee,
        creator_fee_cents=creator_fee,
        effective_rate=_effective_rate(subscriber_fee, amount_cents),
        gross_cents=amount_cents + subscriber_fee,
        net_cents=amount_cents - creator_fee,
        base_cents=amount_cents,
        currency=currency,
        fee_model=FEE_MODEL_SPLIT_V1,
        fee_mode=FEE_MODE_SPLIT,
        purpose_type=purpose_type,
        fee_was_capped=fee_was_capped,
        estimated_processor_fee=processor_fee,
        estimated_margin=total_fee - processor_fee,
    )


# ============================================================================
# TIERED V2
# ============================================================================

def calculate_tiered_platform_fee(amount_cents: int, tier: str = TIER_STANDARD) -> int:
    """Marginal platform fee: tier1 rate up to the breakpoint, tier2 above, $1 floor"""
    if amount_cents <= 0:
        return 0
    tier1_rate, tier2_rate = TIERED_PLATFORM_RATES[tier]
    if amount_cents <= TIER1_LIMIT_CENTS:
        fee = Decimal(amount_cents) * tier1_rate
    else:
        fee = Decimal(TIER1_LIMIT_CENTS) * tier1_rate + Decimal(amount_cents - TIER1_LIMIT_CENTS) * tier2_rate
    return max(round_half_up(fee), MIN_PLATFORM_FEE_CENTS)


def get_processing_rate(currency: str, is_cross_border: bool = False) -> Tuple[Decimal, int]:
    percent, fixed = get_processor_fee(currency)
    if is_cross_border:
        percent += CROSS_BORDER_PROCESSING_SURCHARGE
    return percent, fixed


def calculate_processing_fee(amount_cents: int, currency: str, is_cross_border: bool = False) -> int:
    percent, fixed = get_processing_rate(currency, is_cross_border)
    return round_half_up(Decimal(amount_cents) * percent) + fixed


def calculate_tiered_fees(
    amount_cents: int,
    currency: str,
    tier: str = TIER_STANDARD,
    direction: str = DIRECTION_RECIPIENT_PAYS,
    is_cross_border: bool = False,
) -> TieredFeeCalculation:
    """Tiered platform fee with pass-through processing.

    recipient_pays: the payer is charged face value and the recipient absorbs every fee.
    payer_pays: the payer is grossed up so the recipient gets the full amount. The
    processing fee is assessed on the grossed-up charge, so
    gross = ceil((base + platform + fixed) / (1 - percent)).
    """
    currency = currency.upper()
    if tier not in TIERED_PLATFORM_RATES:
        raise ValueError(f"Unknown fee tier: {tier}")

    if amount_cents <= 0:
        return TieredFeeCalculation(
            payer_pays_cents=0,
            recipient_receives_cents=0,
            platform_fee_cents=0,
            processing_fee_cents=0,
            total_fee_cents=0,
            platform_fee_percent=0.0,
            processing_fee_percent=0.0,
            direction=direction,
            tier=tier,
            currency=currency,
        )

    platform_fee = calculate_tiered_platform_fee(amount_cents, tier)

    if direction == DIRECTION_RECIPIENT_PAYS:
        processing_fee = calculate_processing_fee(amount_cents, currency, is_cross_border)
        payer_pays = amount_cents
        recipient_receives = amount_cents - platform_fee - processing_fee
    elif direction == DIRECTION_PAYER_PAYS:
        percent, fixed = get_processing_rate(currency, is_cross_border)
        base_with_platform = amount_cents + platform_fee
        payer_pays = _ceil((Decimal(base_with_platform) + fixed) / (Decimal(1) - percent))
        processing_fee = payer_pays - base_with_platform
        recipient_receives = amount_cents
    else:
        raise ValueError(f"Unknown fee direction: {direction}")

    return TieredFeeCalculation(
        payer_pays_cents=payer_pays,
        recipient_receives_cents=recipient_receives,
        platform_fee_cents=platform_fee,
        processing_fee_cents=processing_fee,
        total_fee_cents=platform_fee + processing_fee,
        platform_fee_percent=float(Decimal(platform_fee) * 100 / Decimal(amount_cents)),
        processing_fee_percent=float(Decimal(processing_fee) * 100 / Decimal(amount_cents)),
        direction=direction,
        tier=tier,
        currency=currency,
    )


def _tiered_as_calculation(
    amount_cents: int,
    currency: str,
    purpose: Optional[str],
    fee_mode: str,
    is_cross_border: bool,
    tier: str,
) -> FeeCalculation:
    currency = currency.upper()
    purpose_type = normalize_purpose(purpose)
    if amount_cents == 0:
        return _zero_fee(currency, FEE_MODEL_TIERED_V2, fee_mode, purpose_type)

    direction = DIRECTION_RECIPIENT_PAYS if fee_mode == FEE_MODE_ABSORB else DIRECTION_PAYER_PAYS
    tiered = calculate_tiered_fees(amount_cents, currency, tier, direction, is_cross_border)
    platform_fee = tiered.platform_fee_cents
    return FeeCalculation(
        fee_cents=platform_fee,
        subscriber_fee_cents=platform_fee if direction == DIRECTION_PAYER_PAYS else 0,
        creator_fee_cents=platform_fee if direction == DIRECTION_RECIPIENT_PAYS else 0,
        effective_rate=_effective_rate(platform_fee, amount_cents),
        gross_cents=tiered.payer_pays_cents,
        net_cents=tiered.recipient_receives_cents,
        base_cents=amount_cents,
        currency=currency,
        fee_model=FEE_MODEL_TIERED_V2,
        fee_mode=fee_mode,
        purpose_type=purpose_type,
        fee_was_capped=platform_fee == MIN_PLATFORM_FEE_CENTS,
        estimated_processor_fee=tiered.processing_fee_cents,
        estimated_margin=platform_fee,
    )


# ============================================================================
# DISPATCH
# ============================================================================

def calculate_fee(
    amount_cents: int,
    currency: str,
    purpose: Optional[str] = None,
    fee_mode: Optional[str] = FEE_MODE_PASS_TO_SUBSCRIBER,
    fee_model: Optional[str] = FEE_MODEL_FLAT,
    is_cross_border: bool = False,
    tier: str = TIER_STANDARD,
) -> FeeCalculation:
    """Compute the fee for a stored fee-model tag.

    The model is always taken from the tag recorded on the subscription or payment;
    it is never inferred from which other fields happen to be present.

    Raises:
        ValueError: negative amount, unknown fee model or unknown fee mode
    """
    _validate_amount(amount_cents)
    model = normalize_fee_model(fee_model)
    fee_mode = fee_mode or FEE_MODE_PASS_TO_SUBSCRIBER
    currency = currency.upper()

    if model is FEE_MODEL_LEGACY:
        return _legacy_as_calculation(amount_cents, currency, purpose)
    if model == FEE_MODEL_FLAT:
        return calculate_flat_fee(amount_cents, currency, purpose, fee_mode, is_cross_border)
    if model == FEE_MODEL_SPLIT_V1:
        return calculate_split_fee(amount_cents, currency, purpose, is_cross_border)
    if model == FEE_MODEL_TIERED_V2:
        return _tiered_as_calculation(amount_cents, currency, purpose, fee_mode, is_cross_border, tier)
    raise ValueError(f"Unknown fee model: {fee_model}")


def calculate_reversal(
    amount_cents: int,
    original_gross_cents: Optional[int],
    original_fee_cents: int,
    original_net_cents: int,
    original_subscriber_fee_cents: Optional[int] = None,
    original_creator_fee_cents: Optional[int] = None,
) -> Optional[Reversal]:
    """Split a refund/dispute amount using the original payment's stored ratios.

    Rates change over time, so a reversal must reproduce the split that was applied
    when the money came in. Returns None when the original has no usable gross.
    """
    _validate_amount(amount_cents)
    if not original_gross_cents or original_gross_cents <= 0:
        return None

    gross = Decimal(original_gross_cents)
    amount = Decimal(amount_cents)

    def share(part: Optional[int]) -> Optional[int]:
        if part is None:
            return None
        return round_half_up(amount * Decimal(part) / gross)

    return Reversal(
        amount_cents=amount_cents,
        fee_cents=share(original_fee_cents),
        net_cents=share(original_net_cents),
        subscriber_fee_cents=share(original_subscriber_fee_cents),
        creator_fee_cents=share(original_creator_fee_cents),
    )
