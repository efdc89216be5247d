"""
Fee calculator.

Computes the platform fee, GST on that fee, the processor's fee and the net
amount an organization receives. Pure functions over Decimal dollars; every
sub-result is rounded half-up to the cent before it feeds the next one.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from charitypay.core.config import Settings, settings as default_settings

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, str, float]


def round2(value: Number) -> Decimal:
    """Round to cents, half-up."""
    if not isinstance(value, Decimal):
        # str() keeps floats like 0.1 from dragging in binary noise
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Convert a dollar amount to integer minor units for the processor."""
    return int((round2(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return round2(Decimal(cents) / 100)


@dataclass(frozen=True)
class FeeRates:
    """Rates the calculator runs with. Injected so callers and tests can vary them."""
    platform_fee_rate: Decimal = Decimal("0.05")
    gst_rate: Decimal = Decimal("0.10")
    processor_fee_rate: Decimal = Decimal("0.029")
    processor_fixed_fee: Decimal = Decimal("0.30")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeeRates":
        settings = settings or default_settings
        return cls(
            platform_fee_rate=Decimal(settings.PLATFORM_FEE_RATE),
            gst_rate=Decimal(settings.GST_RATE),
            processor_fee_rate=Decimal(settings.PROCESSOR_FEE_RATE),
            processor_fixed_fee=Decimal(settings.PROCESSOR_FIXED_FEE),
        )


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee calculation. All amounts in dollars, rounded to cents."""
    base_amount: Decimal
    cover_fees: bool
    platform_fee: Decimal
    gst_on_fee: Decimal
    application_fee: Decimal
    processor_fee: Decimal
    total_charge: Decimal
    net_to_org: Decimal

    @property
    def total_fees(self) -> Decimal:
        return self.application_fee + self.processor_fee

    @property
    def total_charge_cents(self) -> int:
        return to_cents(self.total_charge)

    @property
    def application_fee_cents(self) -> int:
        return to_cents(self.application_fee)

    def to_metadata(self) -> dict[str, str]:
        """Processor metadata values must be strings."""
        return {
            "baseAmount": str(self.base_amount),
            "platformFee": str(self.platform_fee),
            "gstOnFee": str(self.gst_on_fee),
            "processorFee": str(self.processor_fee),
            "netToOrg": str(self.net_to_org),
            "coverFees": "true" if self.cover_fees else "false",
        }


def compute_fees(
    base_amount: Number,
    cover_fees: bool,
    rates: Optional[FeeRates] = None,
) -> FeeBreakdown:
    """
    Compute the fee breakdown for a donation.

    When ``cover_fees`` is set the total is grossed up so that after the
    processor takes its percentage and fixed fee, and the platform takes its
    fee plus GST, the organization nets the full base amount (to the cent).
    Otherwise the donor pays exactly the base amount and fees come out of it.

    The caller is responsible for rejecting amounts below the configured
    minimum; below it the fixed processor fee can exceed the donation and the
    net is floored at zero.
    """
    rates = rates or FeeRates()
    base = round2(base_amount)

    platform_fee = round2(base * rates.platform_fee_rate)
    gst_on_fee = round2(platform_fee * rates.gst_rate)
    application_fee = platform_fee + gst_on_fee

    if cover_fees:
        total_charge = round2(
            (base + application_fee + rates.processor_fixed_fee)
            / (Decimal(1) - rates.processor_fee_rate)
        )
    else:
        total_charge = base

    processor_fee = round2(total_charge * rates.processor_fee_rate + rates.processor_fixed_fee)
    net_to_org = max(total_charge - processor_fee - application_fee, ZERO)

    return FeeBreakdown(
        base_amount=base,
        cover_fees=cover_fees,
        platform_fee=platform_fee,
        gst_on_fee=gst_on_fee,
        application_fee=application_fee,
        processor_fee=processor_fee,
        total_charge=total_charge,
        net_to_org=net_to_org,
    )
