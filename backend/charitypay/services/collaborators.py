"""
Interfaces for the post-success side effects.

The pipeline only talks to these; the DB-backed implementations live in
ledger.py, receipts.py and rewards.py.
"""
from decimal import Decimal
from typing import Optional, Protocol

from charitypay.services.fees import FeeBreakdown


class LedgerCollaborator(Protocol):
    async def append_credit(self, organization_id: str, amount: Decimal, donation_id: str):
        ...

    async def append_debit(self, organization_id: str, amount: Decimal, donation_id: str):
        ...


class ReceiptCollaborator(Protocol):
    async def generate(
        self,
        donation_id: str,
        donor_id: str,
        organization_id: str,
        breakdown: FeeBreakdown,
    ) -> Optional[str]:
        ...


class PointsCollaborator(Protocol):
    async def award(self, donor_id: str, donation_id: str, base_amount: Decimal) -> int:
        ...


class BadgeCollaborator(Protocol):
    async def evaluate(self, donor_id: str, donation_id: str) -> Optional[str]:
        ...
