"""Read-only view of the chart-of-accounts collaborator tables.

Accounts, accounting periods and document-type mappings are owned by the
bookkeeping collaborator; the pipeline only reads them. Period and fiscal year
flags are checked here, never written.
"""

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from docledger.models.accounting import Account, AccountingPeriod, AccountMapping


class ChartOfAccounts:
    def __init__(self, db: Session) -> None:
        self._db = db
        self._accounts: dict[str, Optional[Account]] = {}

    def account(self, code: str) -> Optional[Account]:
        if code not in self._accounts:
            self._accounts[code] = self._db.get(Account, code)
        return self._accounts[code]

    def accounts(self) -> list[Account]:
        return self._db.query(Account).order_by(Account.code.asc()).all()

    def mapping_for(self, document_type: str) -> Optional[AccountMapping]:
        return self._db.get(AccountMapping, document_type)

    def period_for(self, on: date) -> Optional[AccountingPeriod]:
        return (
            self._db.query(AccountingPeriod)
            .filter(AccountingPeriod.start_date <= on, AccountingPeriod.end_date >= on)
            .order_by(AccountingPeriod.start_date.desc())
            .first()
        )

    def is_open(self, on: date) -> tuple[bool, Optional[str]]:
        """Whether postings dated ``on`` are accepted, with the rule that fails."""
        period = self.period_for(on)
        if period is None:
            return False, "no_open_period"
        if period.is_closed or period.fiscal_year_closed:
            return False, "closed_period"
        return True, None
