"""Report engine: cached, versioned financial reports over posted entries.

Reports are keyed by (type, period_start, period_end); at most one live
(non-archived) row exists per key. ``cached_data`` and ``version`` are always
written together in one conditional UPDATE, so a reader sees either the old
or the new payload in full and concurrent refreshes increment once.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docledger.core.errors import InvalidTransition, NotFoundError, ValidationError
from docledger.core.storage import storage_retry
from docledger.models.accounting import Account, EntryLine, ProposedEntry, Report
from docledger.schemas.ledger import DEBIT_NORMAL, AccountType, EntryStatus, ReportStatus, ReportType
from docledger.services.field_shapes import to_money
from docledger.services.transition_service import create_audit_log

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
NO_POSTED_ENTRIES = "no_posted_entries"


class ReportComputationError(Exception):
    """The report cannot be computed for its period; ``reason`` is stored on the row."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> str:
    return str(to_money(value))


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------


def _posted_lines(db: Session, *, start: Optional[date], end: date) -> list[tuple[EntryLine, ProposedEntry]]:
    q = (
        db.query(EntryLine, ProposedEntry)
        .join(ProposedEntry, EntryLine.entry_id == ProposedEntry.id)
        .filter(ProposedEntry.status == EntryStatus.POSTED.value, ProposedEntry.entry_date <= end)
    )
    if start is not None:
        q = q.filter(ProposedEntry.entry_date >= start)
    return q.order_by(
        ProposedEntry.entry_date.asc(),
        ProposedEntry.sequence_number.asc(),
        EntryLine.line_no.asc(),
    ).all()


def _signed(account_type: AccountType, debit: Decimal, credit: Decimal) -> Decimal:
    """Amount in the account's normal-balance direction."""
    if account_type in DEBIT_NORMAL:
        return debit - credit
    return credit - debit


class _Ledger:
    """Posted lines up to ``end`` with their accounts, split around ``start``."""

    def __init__(self, db: Session, start: date, end: date) -> None:
        self.start = start
        self.end = end
        self.rows = _posted_lines(db, start=None, end=end)
        codes = {line.account_code for line, _ in self.rows}
        accounts = db.query(Account).filter(Account.code.in_(codes)).all() if codes else []
        self.accounts = {a.code: a for a in accounts}
        for code in codes - set(self.accounts):
            logger.warning("Posted lines reference unknown account %s; excluded from reports", code)

    def account_type(self, code: str) -> Optional[AccountType]:
        account = self.accounts.get(code)
        return AccountType(account.account_type) if account else None

    def in_period(self) -> list[tuple[EntryLine, ProposedEntry]]:
        return [(line, entry) for line, entry in self.rows if entry.entry_date >= self.start]

    def before_period(self) -> list[tuple[EntryLine, ProposedEntry]]:
        return [(line, entry) for line, entry in self.rows if entry.entry_date < self.start]

    def balances(self, rows) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for line, _ in rows:
            account_type = self.account_type(line.account_code)
            if account_type is None:
                continue
            totals[line.account_code] += _signed(account_type, to_money(line.debit), to_money(line.credit))
        return totals

    def account_rows(self, balances: dict[str, Decimal], account_type: AccountType) -> list[dict[str, Any]]:
        return [
            {"account_code": code, "name": self.accounts[code].name, "amount": _money(amount)}
            for code, amount in sorted(balances.items())
            if self.account_type(code) == account_type
        ]


def _income_statement(ledger: _Ledger) -> dict[str, Any]:
    balances = ledger.balances(ledger.in_period())
    revenue = ledger.account_rows(balances, AccountType.REVENUE)
    expenses = ledger.account_rows(balances, AccountType.EXPENSE)
    total_revenue = sum((Decimal(r["amount"]) for r in revenue), ZERO)
    total_expenses = sum((Decimal(r["amount"]) for r in expenses), ZERO)
    return {
        "revenue": revenue,
        "expenses": expenses,
        "total_revenue": _money(total_revenue),
        "total_expenses": _money(total_expenses),
        "net_income": _money(total_revenue - total_expenses),
    }


def _balance_sheet(ledger: _Ledger) -> dict[str, Any]:
    balances = ledger.balances(ledger.rows)
    assets = ledger.account_rows(balances, AccountType.ASSET)
    liabilities = ledger.account_rows(balances, AccountType.LIABILITY)
    equity = ledger.account_rows(balances, AccountType.EQUITY)

    def _total(rows) -> Decimal:
        return sum((Decimal(r["amount"]) for r in rows), ZERO)

    revenue = sum((v for c, v in balances.items() if ledger.account_type(c) == AccountType.REVENUE), ZERO)
    expense = sum((v for c, v in balances.items() if ledger.account_type(c) == AccountType.EXPENSE), ZERO)
    current_earnings = revenue - expense

    total_assets = _total(assets)
    total_liabilities = _total(liabilities)
    total_equity = _total(equity) + current_earnings
    return {
        "as_of": ledger.end.isoformat(),
        "assets": assets,
        "liabilities": liabilities,
        "equity": equity,
        "current_earnings": _money(current_earnings),
        "total_assets": _money(total_assets),
        "total_liabilities": _money(total_liabilities),
        "total_equity": _money(total_equity),
        "total_liabilities_and_equity": _money(total_liabilities + total_equity),
    }


def _line_payload(line: EntryLine, entry: ProposedEntry) -> dict[str, Any]:
    return {
        "entry_id": str(entry.id),
        "entry_date": entry.entry_date.isoformat(),
        "sequence_number": entry.sequence_number,
        "line_no": line.line_no,
        "account_code": line.account_code,
        "debit": _money(line.debit),
        "credit": _money(line.credit),
        "description": line.description or entry.description,
        "counterparty": entry.counterparty,
    }


def _general_ledger(ledger: _Ledger) -> dict[str, Any]:
    opening = ledger.balances(ledger.before_period())
    period_rows = [
        (line, entry) for line, entry in ledger.in_period() if ledger.account_type(line.account_code) is not None
    ]

    per_account: dict[str, list[tuple[EntryLine, ProposedEntry]]] = defaultdict(list)
    for line, entry in period_rows:
        per_account[line.account_code].append((line, entry))

    accounts = []
    for code in sorted(set(opening) | set(per_account)):
        account_type = ledger.account_type(code)
        balance = opening.get(code, ZERO)
        lines = []
        for line, entry in per_account.get(code, []):
            balance += _signed(account_type, to_money(line.debit), to_money(line.credit))
            payload = _line_payload(line, entry)
            payload["balance"] = _money(balance)
            lines.append(payload)
        accounts.append(
            {
                "account_code": code,
                "name": ledger.accounts[code].name,
                "account_type": account_type.value,
                "opening_balance": _money(opening.get(code, ZERO)),
                "lines": lines,
                "closing_balance": _money(balance),
            }
        )
    return {
        "accounts": accounts,
        "entries": [_line_payload(line, entry) for line, entry in period_rows],
    }


def _trial_balance(ledger: _Ledger) -> dict[str, Any]:
    debits: dict[str, Decimal] = defaultdict(lambda: ZERO)
    credits: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for line, _ in ledger.rows:
        if ledger.account_type(line.account_code) is None:
            continue
        debits[line.account_code] += to_money(line.debit)
        credits[line.account_code] += to_money(line.credit)

    rows = []
    for code in sorted(set(debits) | set(credits)):
        net = debits[code] - credits[code]
        rows.append(
            {
                "account_code": code,
                "name": ledger.accounts[code].name,
                "account_type": ledger.account_type(code).value,
                "total_debit": _money(debits[code]),
                "total_credit": _money(credits[code]),
                "balance_debit": _money(net if net > 0 else ZERO),
                "balance_credit": _money(-net if net < 0 else ZERO),
            }
        )
    return {
        "as_of": ledger.end.isoformat(),
        "accounts": rows,
        "total_debit": _money(sum(debits.values(), ZERO)),
        "total_credit": _money(sum(credits.values(), ZERO)),
    }


def _sub_ledger(ledger: _Ledger) -> dict[str, Any]:
    groups: dict[str, list[tuple[EntryLine, ProposedEntry]]] = defaultdict(list)
    for line, entry in ledger.in_period():
        if ledger.account_type(line.account_code) not in (AccountType.ASSET, AccountType.LIABILITY):
            continue
        groups[entry.counterparty or "unassigned"].append((line, entry))

    counterparties = []
    for name in sorted(groups):
        rows = groups[name]
        total_debit = sum((to_money(line.debit) for line, _ in rows), ZERO)
        total_credit = sum((to_money(line.credit) for line, _ in rows), ZERO)
        counterparties.append(
            {
                "counterparty": name,
                "lines": [_line_payload(line, entry) for line, entry in rows],
                "total_debit": _money(total_debit),
                "total_credit": _money(total_credit),
                "balance": _money(total_debit - total_credit),
            }
        )
    return {"counterparties": counterparties}


_BUILDERS = {
    ReportType.INCOME_STATEMENT: _income_statement,
    ReportType.BALANCE_SHEET: _balance_sheet,
    ReportType.GENERAL_LEDGER: _general_ledger,
    ReportType.TRIAL_BALANCE: _trial_balance,
    ReportType.SUB_LEDGER: _sub_ledger,
}


def compute_report(db: Session, report_type: ReportType, period_start: date, period_end: date) -> dict[str, Any]:
    """Build the payload for a report from posted entries.

    Raises ``ReportComputationError`` when the period holds no posted entry.
    """
    ledger = _Ledger(db, period_start, period_end)
    if not ledger.in_period():
        raise ReportComputationError(NO_POSTED_ENTRIES)
    data = _BUILDERS[report_type](ledger)
    data["report_type"] = report_type.value
    data["period_start"] = period_start.isoformat()
    data["period_end"] = period_end.isoformat()
    return data


def is_balanced(report_type: str, cached_data: Optional[dict[str, Any]], tolerance: Decimal) -> Optional[bool]:
    """Derived on every read; ``None`` for report types without a balance check."""
    if not cached_data:
        return None
    if report_type == ReportType.BALANCE_SHEET.value:
        left, right = cached_data.get("total_assets"), cached_data.get("total_liabilities_and_equity")
    elif report_type == ReportType.TRIAL_BALANCE.value:
        left, right = cached_data.get("total_debit"), cached_data.get("total_credit")
    else:
        return None
    if left is None or right is None:
        return None
    return abs(Decimal(left) - Decimal(right)) <= tolerance


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def get_report(db: Session, report_id: str) -> Report:
    report = db.get(Report, report_id)
    if report is None:
        raise NotFoundError(f"Report {report_id} not found")
    return report


def find_live_report(db: Session, report_type: ReportType, period_start: date, period_end: date) -> Optional[Report]:
    return (
        db.query(Report)
        .filter(
            Report.report_type == report_type.value,
            Report.period_start == period_start,
            Report.period_end == period_end,
            Report.archived_at.is_(None),
        )
        .one_or_none()
    )


def store_result(
    db: Session,
    report: Report,
    *,
    expected_version: int,
    data: Optional[dict[str, Any]] = None,
    failure_reason: Optional[str] = None,
) -> bool:
    """Swap in a computed payload (or record a failure) if nobody beat us to it.

    Success writes ``cached_data`` and ``version + 1`` in one statement; a
    failure only sets FAILED and the reason, leaving the previous payload and
    version readable. Returns False when the stored version moved on.
    """
    now = _now()
    if failure_reason is None:
        values = {
            "cached_data": data,
            "version": expected_version + 1,
            "status": ReportStatus.COMPLETED.value,
            "failure_reason": None,
            "refreshed_at": now,
        }
        if expected_version == 0:
            values["generated_at"] = now
    else:
        values = {"status": ReportStatus.FAILED.value, "failure_reason": failure_reason}

    updated = (
        db.query(Report)
        .filter(
            Report.id == report.id,
            Report.version == expected_version,
            Report.archived_at.is_(None),
        )
        .update(values, synchronize_session=False)
    )
    db.expire(report)
    return updated == 1


def _run(db: Session, report: Report, *, actor_id: Optional[str], action: str) -> Report:
    """Compute, store against the version read, and commit."""
    expected_version = report.version
    report_type = ReportType(report.report_type)
    try:
        data = compute_report(db, report_type, report.period_start, report.period_end)
    except ReportComputationError as exc:
        data, failure_reason = None, exc.reason
    except Exception:
        logger.exception("Report %s computation crashed", report.id)
        db.rollback()
        store_result(db, report, expected_version=expected_version, failure_reason="computation_error")
        db.commit()
        raise
    else:
        failure_reason = None

    won = store_result(db, report, expected_version=expected_version, data=data, failure_reason=failure_reason)
    if won:
        create_audit_log(
            db,
            entity_type="report",
            entity_id=str(report.id),
            action="REPORT_GENERATION_FAILED" if failure_reason else action,
            old_value={"version": expected_version},
            new_value={"version": report.version, "status": report.status},
            actor_type="USER" if actor_id else "SYSTEM",
            actor_id=actor_id,
            metadata={"report_type": report_type.value, "reason": failure_reason},
        )
    else:
        logger.info("Report %s was refreshed concurrently; keeping version %s", report.id, report.version)
    db.commit()
    db.refresh(report)
    return report


@storage_retry
def generate_report(
    db: Session,
    report_type: ReportType,
    period_start: date,
    period_end: date,
    *,
    actor_id: Optional[str] = None,
) -> Report:
    """Return the live report for the key, computing it when it does not exist yet."""
    if period_start > period_end:
        raise ValidationError(
            "period_start must not be after period_end",
            errors=[
                {
                    "rule": "period_range",
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                }
            ],
        )

    existing = find_live_report(db, report_type, period_start, period_end)
    if existing is not None:
        return existing

    report = Report(
        report_type=report_type.value,
        period_start=period_start,
        period_end=period_end,
        version=0,
        status=ReportStatus.GENERATING.value,
        view_count=0,
        created_at=_now(),
    )
    db.add(report)
    try:
        db.commit()
    except IntegrityError:
        # Another caller created the live report for this key first.
        db.rollback()
        winner = find_live_report(db, report_type, period_start, period_end)
        if winner is None:
            raise
        return winner

    return _run(db, report, actor_id=actor_id, action="REPORT_GENERATED")


@storage_retry
def refresh_report(db: Session, report_id: str, *, actor_id: Optional[str] = None) -> Report:
    report = get_report(db, report_id)
    if report.archived_at is not None:
        raise InvalidTransition(
            f"Report {report_id} is archived",
            errors=[{"rule": "archived_report"}],
        )
    return _run(db, report, actor_id=actor_id, action="REPORT_REFRESHED")


@storage_retry
def read_report(
    db: Session,
    report_type: ReportType,
    period_start: date,
    period_end: date,
    *,
    actor_id: Optional[str] = None,
) -> Report:
    """Generate-or-fetch; every read that returns cached data counts a view."""
    report = generate_report(db, report_type, period_start, period_end, actor_id=actor_id)
    if report.cached_data is not None:
        db.query(Report).filter(Report.id == report.id).update(
            {"view_count": Report.view_count + 1}, synchronize_session=False
        )
        db.commit()
        db.refresh(report)
    return report


@storage_retry
def archive_report(db: Session, report_id: str, *, actor_id: Optional[str] = None) -> Report:
    report = get_report(db, report_id)
    if report.archived_at is not None:
        return report
    updated = (
        db.query(Report)
        .filter(Report.id == report.id, Report.archived_at.is_(None))
        .update(
            {"status": ReportStatus.ARCHIVED.value, "archived_at": _now()},
            synchronize_session=False,
        )
    )
    db.expire(report)
    if updated == 1:
        create_audit_log(
            db,
            entity_type="report",
            entity_id=str(report.id),
            action="REPORT_ARCHIVED",
            old_value=None,
            new_value={"status": ReportStatus.ARCHIVED.value},
            actor_type="USER" if actor_id else "SYSTEM",
            actor_id=actor_id,
        )
    db.commit()
    db.refresh(report)
    return report
