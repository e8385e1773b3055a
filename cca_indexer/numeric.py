#!/usr/bin/env python3
"""
Exact numeric conversions for on-chain values.

All money and price fields are stored as decimal strings with at most 18 fractional
digits. Conversions truncate toward zero and never go through floats.
"""

from decimal import ROUND_DOWN, Decimal, getcontext
from typing import Iterable, List, Union

from .errors import StepValidationError
from .models import AuctionStep

# Set high precision for decimal calculations
getcontext().prec = 100

Q96_BITS = 96
Q96 = 2 ** Q96_BITS

# Matches numeric(38,18) storage columns
MAX_FRACTION_DIGITS = 18

# 1e7 = 100% of supply in milli-basis points
MPS_TOTAL = 10_000_000

STEP_SIZE_BYTES = 8
STEP_RATE_BITS = 24
STEP_SPAN_BITS = 40
STEP_RATE_MASK = (1 << STEP_RATE_BITS) - 1
STEP_SPAN_MASK = (1 << STEP_SPAN_BITS) - 1

IntLike = Union[int, str]


def _to_int(raw: IntLike) -> int:
    if isinstance(raw, bool):
        raise TypeError("boolean is not a valid integer amount")
    if isinstance(raw, str):
        raw = raw.strip()
        value = int(raw, 16) if raw.lower().startswith('0x') else int(raw)
    else:
        value = int(raw)
    if value < 0:
        raise ValueError(f"Negative raw value: {raw}")
    return value


def _format_scaled(scaled: int) -> str:
    """Render an integer holding 18 implied fractional digits, trailing zeros stripped"""
    unit = 10 ** MAX_FRACTION_DIGITS
    whole, frac = divmod(scaled, unit)
    frac_str = str(frac).rjust(MAX_FRACTION_DIGITS, '0').rstrip('0')
    if not frac_str:
        return str(whole)
    return f"{whole}.{frac_str}"


def _ratio_to_decimal(numerator: int, denominator: int) -> str:
    # Floor division of non-negative ints truncates toward zero
    return _format_scaled((numerator * 10 ** MAX_FRACTION_DIGITS) // denominator)


def fixed_point_to_decimal(raw: IntLike, fractional_bits: int = Q96_BITS, scale_shift: int = 0) -> str:
    """Convert a binary fixed-point integer to a decimal string.

    The value is ``raw / 2**fractional_bits * 10**scale_shift``, truncated to 18
    fractional digits. ``scale_shift`` accounts for differing decimal places between
    the two sides of a ratio (token decimals minus currency decimals for prices).
    """
    value = _to_int(raw)
    if value == 0:
        return "0"
    numerator = value
    denominator = 1 << fractional_bits
    if scale_shift >= 0:
        numerator *= 10 ** scale_shift
    else:
        denominator *= 10 ** (-scale_shift)
    return _ratio_to_decimal(numerator, denominator)


def raw_amount_to_decimal(raw: IntLike, decimals: int) -> str:
    """Convert integer token/currency units to a decimal string (e.g. 256607984, 6 -> 256.607984)"""
    value = _to_int(raw)
    if value == 0:
        return "0"
    return _ratio_to_decimal(value, 10 ** decimals)


def q96_to_price(raw: IntLike, token_decimals: int = 18, currency_decimals: int = 18) -> str:
    """Human price (currency per whole token) from a Q96 price in raw units"""
    return fixed_point_to_decimal(raw, Q96_BITS, token_decimals - currency_decimals)


def _parse_decimal(value: Union[str, int, Decimal]) -> Decimal:
    number = Decimal(str(value).strip())
    if number < 0:
        raise ValueError(f"Negative decimal value: {value}")
    return number


def decimal_to_fixed_point(value: Union[str, int, Decimal], fractional_bits: int = Q96_BITS,
                           scale_shift: int = 0) -> int:
    """Inverse of fixed_point_to_decimal.

    Rounds up so that a value produced by fixed_point_to_decimal maps back to the
    original integer whenever the 18-digit output was precise enough to identify it.
    """
    number = _parse_decimal(value)
    # Exact rational: digits * 10**exponent
    _, digits, exponent = number.as_tuple()
    mantissa = int(''.join(map(str, digits))) if digits else 0
    if mantissa == 0:
        return 0
    numerator = mantissa << fractional_bits
    denominator = 1
    power = exponent - scale_shift
    if power >= 0:
        numerator *= 10 ** power
    else:
        denominator = 10 ** (-power)
    return -(-numerator // denominator)


def decimal_to_raw_amount(value: Union[str, int, Decimal], decimals: int) -> int:
    """Decimal string to integer units, truncating digits beyond ``decimals``"""
    number = _parse_decimal(value)
    return int(number.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def decode_packed_steps(data: Union[bytes, str]) -> List[AuctionStep]:
    """Decode the packed release schedule.

    Each 8-byte chunk holds the rate in its high 24 bits and the block span in its low
    40 bits. A trailing partial chunk ends decoding, all-zero chunks are filler and
    dropped. Totals are not checked here; historical data is accepted as emitted.
    """
    if isinstance(data, str):
        hex_str = data[2:] if data.lower().startswith('0x') else data
        data = bytes.fromhex(hex_str)

    steps = []
    for offset in range(0, len(data), STEP_SIZE_BYTES):
        chunk = data[offset:offset + STEP_SIZE_BYTES]
        if len(chunk) < STEP_SIZE_BYTES:
            break
        packed = int.from_bytes(chunk, 'big')
        rate = (packed >> STEP_SPAN_BITS) & STEP_RATE_MASK
        span = packed & STEP_SPAN_MASK
        if rate == 0 and span == 0:
            continue
        steps.append(AuctionStep(rate=rate, block_span=span))
    return steps


def validate_steps(steps: Iterable[AuctionStep]) -> int:
    """Check a schedule built for a new auction; returns the total on success"""
    total = 0
    for step in steps:
        if step.block_span <= 0:
            raise StepValidationError("block span must be positive")
        if step.rate <= 0:
            raise StepValidationError("rate must be positive")
        if step.rate > STEP_RATE_MASK or step.block_span > STEP_SPAN_MASK:
            raise StepValidationError(f"step does not fit its bit field: {step}")
        total += step.rate * step.block_span

    if total != MPS_TOTAL:
        raise StepValidationError(f"Total MPS is {total}, expected {MPS_TOTAL} (100%)")
    return total


def encode_packed_steps(steps: List[AuctionStep]) -> bytes:
    validate_steps(steps)
    return b''.join(
        ((step.rate << STEP_SPAN_BITS) | step.block_span).to_bytes(STEP_SIZE_BYTES, 'big')
        for step in steps
    )


def _split_evenly(share: int, blocks: int) -> List[AuctionStep]:
    """Release ``share`` mps over ``blocks`` using at most two steps whose total is exact"""
    rate, remainder = divmod(share, blocks)
    steps = []
    if rate and blocks - remainder:
        steps.append(AuctionStep(rate=rate, block_span=blocks - remainder))
    if remainder:
        steps.append(AuctionStep(rate=rate + 1, block_span=remainder))
    return steps


def generate_steps(duration_blocks: int, preset: str = 'linear') -> List[AuctionStep]:
    """Build a release schedule that passes validate_steps.

    Presets: ``linear`` spreads supply evenly, ``front_loaded`` releases 70% in the
    first half, ``back_loaded`` releases 70% in the second half.
    """
    if duration_blocks < 2:
        raise StepValidationError("duration must be at least two blocks")

    if preset == 'linear':
        return _split_evenly(MPS_TOTAL, duration_blocks)

    half = duration_blocks // 2
    rest = duration_blocks - half
    if preset == 'front_loaded':
        shares = (MPS_TOTAL * 7 // 10, MPS_TOTAL * 3 // 10)
    elif preset == 'back_loaded':
        shares = (MPS_TOTAL * 3 // 10, MPS_TOTAL * 7 // 10)
    else:
        raise ValueError(f"Unknown preset: {preset}")

    return _split_evenly(shares[0], half) + _split_evenly(shares[1], rest)


def multiply_decimals(a: Union[str, Decimal], b: Union[str, Decimal]) -> str:
    """Product of two decimal strings, truncated to 18 fractional digits"""
    product = _parse_decimal(a) * _parse_decimal(b)
    scaled = int(product.scaleb(MAX_FRACTION_DIGITS).to_integral_value(rounding=ROUND_DOWN))
    return _format_scaled(scaled)


def percent_of(part: int, whole: int) -> str:
    """``part / whole * 100`` as a decimal string; "0" for an empty whole"""
    if whole <= 0 or part == 0:
        return "0"
    sign = '-' if part < 0 else ''
    return sign + _ratio_to_decimal(abs(part) * 100, whole)
