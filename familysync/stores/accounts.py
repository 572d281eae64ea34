"""
Accounts Store

Accounts carry derived totals (assets, liabilities, net worth) that have
to be recomputed whenever the collection changes, including after a
merge replaced it wholesale.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field

from familysync.services.storage.interface import EntityRepository
from familysync.stores.entity_store import EntityStore
from familysync.sync.tombstones import TombstoneLedger


LIABILITY_ACCOUNT_TYPES = frozenset({"credit_card", "loan"})


class CurrencyTotals(BaseModel):
    """Totals for one currency. No conversion between currencies happens here."""

    assets: Decimal = Field(default=Decimal("0"))
    liabilities: Decimal = Field(default=Decimal("0"))

    @property
    def net_worth(self) -> Decimal:
        return self.assets - self.liabilities


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


class AccountsStore(EntityStore):
    """Accounts plus per-currency totals."""

    def __init__(self, repository: EntityRepository, ledger: TombstoneLedger):
        super().__init__("accounts", repository, ledger)
        self._totals: dict[str, CurrencyTotals] = {}

    @property
    def totals(self) -> dict[str, CurrencyTotals]:
        return dict(self._totals)

    def reconcile(self) -> None:
        """Accounts that are inactive or excluded from net worth don't count."""
        totals: dict[str, CurrencyTotals] = {}
        for account in self._items:
            if account.get("isActive") is False or account.get("includeInNetWorth") is False:
                continue

            currency = str(account.get("currency") or "UNKNOWN")
            entry = totals.setdefault(currency, CurrencyTotals())
            balance = _as_decimal(account.get("balance"))
            if account.get("type") in LIABILITY_ACCOUNT_TYPES:
                entry.liabilities += abs(balance)
            else:
                entry.assets += balance
        self._totals = totals
