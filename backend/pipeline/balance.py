"""
Balance Aggregator
==================
Money arithmetic for the trainer ledger.

- Platform fee split with half-up rounding (gross == fee + net, always)
- Proportional refund split against the original ledger entry
- Minor -> major unit conversion honouring zero-decimal currencies
- Increment maps for trainer counters: deltas only, never absolute values
- Offline reconciliation of Σ netAmount against financial.totalEarnings
"""

import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel

from storage.document_store import SERVER_TIMESTAMP, DocumentStore, Increment

logger = structlog.get_logger().bind(component="balance")


# =============================================================================
# CONFIGURATION
# =============================================================================

class LedgerConfig:
    """Ledger configuration from environment"""

    PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "10"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "brl")


ledger_config = LedgerConfig()

# https://docs.stripe.com/currencies#zero-decimal
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

_CENT = Decimal("0.01")
_UNIT = Decimal("1")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(_UNIT, rounding=ROUND_HALF_UP))


# =============================================================================
# FEE SPLITS
# =============================================================================

@dataclass(frozen=True)
class FeeSplit:
    """Amounts in minor units; gross == platform_fee + net."""
    gross: int
    platform_fee: int
    net: int

    def __sub__(self, other: "FeeSplit") -> "FeeSplit":
        return FeeSplit(
            gross=self.gross - other.gross,
            platform_fee=self.platform_fee - other.platform_fee,
            net=self.net - other.net,
        )

    def negated(self) -> "FeeSplit":
        return FeeSplit(gross=-self.gross, platform_fee=-self.platform_fee, net=-self.net)


def split_amount(amount: int, fee_percent: Optional[Union[Decimal, int, str]] = None) -> FeeSplit:
    """Split a charged amount into platform fee and trainer share."""
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    percent = ledger_config.PLATFORM_FEE_PERCENT if fee_percent is None else Decimal(str(fee_percent))
    fee = _round_half_up(Decimal(amount) * percent / Decimal(100))
    return FeeSplit(gross=amount, platform_fee=fee, net=amount - fee)


def refund_split(refund_amount: int, original_gross: int, original_fee: int) -> FeeSplit:
    """
    Share of a refund attributed to the platform and the trainer, in the
    same proportion as the original entry. Never refunds more than the
    original gross.
    """
    if refund_amount < 0:
        raise ValueError(f"refund_amount must be non-negative, got {refund_amount}")
    if original_gross <= 0:
        return split_amount(refund_amount)

    refund_amount = min(refund_amount, original_gross)
    fee = _round_half_up(Decimal(refund_amount) * Decimal(original_fee) / Decimal(original_gross))
    return FeeSplit(gross=refund_amount, platform_fee=fee, net=refund_amount - fee)


def to_major_units(amount: int, currency: Optional[str]) -> Decimal:
    """9000 brl -> Decimal('90.00'); 9000 jpy -> Decimal('9000')."""
    if (currency or ledger_config.DEFAULT_CURRENCY).lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / Decimal(100)).quantize(_CENT)


# =============================================================================
# TRAINER COUNTER DELTAS
# =============================================================================

def earnings_changes(net: int, currency: Optional[str], new_student: bool = False) -> Dict[str, Any]:
    """Trainer update for a purchase or renewal crediting `net` minor units."""
    major = to_major_units(net, currency)
    changes: Dict[str, Any] = {
        "financial.totalEarnings": Increment(major),
        "financial.pendingBalance": Increment(major),
        "updatedAt": SERVER_TIMESTAMP,
    }
    if new_student:
        changes["stats.totalStudents"] = Increment(1)
    return changes


def refund_changes(net_refunded: int, currency: Optional[str]) -> Dict[str, Any]:
    """Trainer update for a refund; `net_refunded` is the positive trainer share."""
    major = to_major_units(net_refunded, currency)
    return {
        "financial.totalEarnings": Increment(-major),
        "financial.pendingBalance": Increment(-major),
        "updatedAt": SERVER_TIMESTAMP,
    }


def payout_changes(amount: int, currency: Optional[str]) -> Dict[str, Any]:
    """Move a transferred amount from pending to available."""
    major = to_major_units(amount, currency)
    return {
        "financial.pendingBalance": Increment(-major),
        "financial.availableBalance": Increment(major),
        "updatedAt": SERVER_TIMESTAMP,
    }


# =============================================================================
# RECONCILIATION
# =============================================================================

class ReconciliationReport(BaseModel):
    trainer_id: str
    transaction_count: int
    ledger_total: Decimal
    reported_total: Decimal
    difference: Decimal
    pending_balance: Decimal
    available_balance: Decimal
    consistent: bool


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


async def reconcile_trainer(store: DocumentStore, trainer_id: str) -> Optional[ReconciliationReport]:
    """
    Compare the sum of a trainer's ledger entries with the reported
    totalEarnings counter. Reads the whole history, so it runs from the
    admin API and never inside a webhook. Returns None for unknown trainers.
    """
    trainer = await store.get("users", trainer_id)
    if trainer is None:
        return None

    entries = await store.find("transactions", {"trainerId": trainer_id})
    ledger_total = sum(
        (to_major_units(int(entry.get("netAmount", 0)), entry.get("currency")) for entry in entries),
        Decimal("0"),
    ).quantize(_CENT)
    reported_total = _as_decimal(trainer.get("financial.totalEarnings")).quantize(_CENT)
    difference = reported_total - ledger_total

    report = ReconciliationReport(
        trainer_id=trainer_id,
        transaction_count=len(entries),
        ledger_total=ledger_total,
        reported_total=reported_total,
        difference=difference,
        pending_balance=_as_decimal(trainer.get("financial.pendingBalance")).quantize(_CENT),
        available_balance=_as_decimal(trainer.get("financial.availableBalance")).quantize(_CENT),
        consistent=difference == 0,
    )

    if report.consistent:
        logger.info("reconciliation_ok", trainer_id=trainer_id, entries=len(entries))
    else:
        logger.warning(
            "reconciliation_mismatch",
            trainer_id=trainer_id,
            ledger_total=str(ledger_total),
            reported_total=str(reported_total),
            difference=str(difference),
        )
    return report
