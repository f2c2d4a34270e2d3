"""
Ordering of "persist the result" and "charge for it".

- save_then_charge: scheduled path. The scan is saved first so a charge
  failure never loses a result; an insufficient balance at charge time is
  logged, the tenant keeps the result.
- charge_then_save: client path. Charging first stops repeated free saves;
  a failed save is compensated with an equal refund.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..archivist.models import ScanRecord
from ..archivist.storage import ScanStore
from .ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass
class Settlement:
    scan: Optional[ScanRecord]
    charged: int = 0
    new_balance: Optional[int] = None
    insufficient: bool = False


async def save_then_charge(
    scans: ScanStore,
    ledger: CreditLedger,
    scan: ScanRecord,
    amount: int,
    description: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Settlement:
    """Persist, then debit. Raises only if the save itself fails (nothing is charged then)."""
    saved = await scans.save(scan)
    if amount <= 0:
        return Settlement(scan=saved)

    try:
        new_balance = await ledger.deduct(scan.user_id, amount, description, metadata)
    except Exception as e:
        logger.error(f"Credit deduction failed for {scan.user_id} after scan {saved.id} was saved: {e}")
        return Settlement(scan=saved)

    if new_balance is None:
        logger.warning(f"Scan {saved.id} saved but {scan.user_id} could not cover {amount} credits")
        return Settlement(scan=saved, insufficient=True)
    return Settlement(scan=saved, charged=amount, new_balance=new_balance)


async def charge_then_save(
    scans: ScanStore,
    ledger: CreditLedger,
    scan: ScanRecord,
    amount: int,
    description: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Settlement:
    """
    Debit, then persist; refund the same amount if the save fails.

    Returns Settlement(insufficient=True, scan=None) when the debit is refused.
    Re-raises the save error after the refund attempt.
    """
    new_balance = None
    if amount > 0:
        new_balance = await ledger.deduct(scan.user_id, amount, description, metadata)
        if new_balance is None:
            return Settlement(scan=None, insufficient=True)

    try:
        saved = await scans.save(scan)
    except Exception as save_error:
        logger.error(f"Failed to save scan for {scan.user_id}: {save_error}")
        if amount > 0:
            try:
                await ledger.refund(scan.user_id, amount, "Refund: scan save failed", metadata)
            except Exception as refund_error:
                logger.critical(
                    f"[BILLING CRITICAL] Refund failed for user {scan.user_id} ({amount} credits): {refund_error}"
                )
        raise

    return Settlement(scan=saved, charged=amount, new_balance=new_balance)
