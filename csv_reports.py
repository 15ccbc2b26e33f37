import io
import csv
import logging
from typing import List, Dict, Any, Optional, Tuple
from sqlalchemy.orm import Session

from models import LedgerEntry, BonusPoolCycle, OrderCompletionStep, Member

logger = logging.getLogger(__name__)

# Dictionary mapping report types to information about the report
REPORTS = {
    "ledger_entries": {
        "name": "Ledger Entries",
        "generator": lambda s, p: ledger_entries_report(s, p)
    },
    "bonus_pool_cycles": {
        "name": "Bonus Pool Cycles",
        "generator": lambda s, p: bonus_pool_cycles_report(s, p)
    },
    "cycle_payouts": {
        "name": "Bonus Pool Cycle Payouts",
        "generator": lambda s, p: cycle_payouts_report(s, p)
    },
    "failed_steps": {
        "name": "Order Completion Follow-ups",
        "generator": lambda s, p: failed_steps_report(s, p)
    }
}

REPORT_TYPES = {key: info["name"] for key, info in REPORTS.items()}


def _cents(amount) -> str:
    """Cents as a plain major-unit number for spreadsheets."""
    amount = int(amount or 0)
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{amount // 100}.{amount % 100:02d}"


def generate_csv_report(
        session: Session,
        report_type: str,
        params: Dict[str, Any] = None
) -> Optional[io.BytesIO]:
    """
    Generates a CSV report based on report type and parameters

    Args:
        session: Database session
        report_type: Type of report (one of REPORTS keys)
        params: Additional parameters for report customization

    Returns:
        BytesIO object containing CSV data or None if report generation failed
    """
    if report_type not in REPORTS:
        logger.error(f"Unknown report type: {report_type}")
        return None

    if params is None:
        params = {}

    try:
        headers, data = REPORTS[report_type]["generator"](session, params)

        string_output = io.StringIO()
        writer = csv.writer(string_output, delimiter=';')  # Use semicolon for better Excel compatibility

        writer.writerow(headers)
        for row in data:
            writer.writerow(row)

        output = io.BytesIO(string_output.getvalue().encode('utf-8-sig'))  # Use BOM for Excel compatibility
        output.seek(0)
        return output

    except (ValueError, KeyError) as e:
        logger.error(f"Error generating {report_type} report: {e}", exc_info=True)
        return None


def ledger_entries_report(session: Session, params: Dict[str, Any]) -> Tuple[List[str], List[List[Any]]]:
    """
    All ledger entries, oldest first.

    Params:
        ownerId: restrict to one member
        account: restrict to one account (points, tokens, cash)
    """
    headers = ["Entry ID", "Date", "Member ID", "Member", "Account", "Type", "Amount", "Order", "Cycle",
               "Description"]

    query = session.query(LedgerEntry, Member.name).outerjoin(
        Member, Member.memberID == LedgerEntry.ownerID
    )
    if params.get("ownerId") is not None:
        query = query.filter(LedgerEntry.ownerID == int(params["ownerId"]))
    if params.get("account"):
        query = query.filter(LedgerEntry.account == params["account"])

    rows = []
    for entry, memberName in query.order_by(LedgerEntry.entryID).all():
        # Tokens and points are counts, cash is cents
        amount = _cents(entry.amount) if entry.account == "cash" else entry.amount
        rows.append([
            entry.entryID,
            entry.createdAt.strftime("%Y-%m-%d %H:%M:%S") if entry.createdAt else "",
            entry.ownerID,
            memberName or "",
            entry.account,
            entry.entryType,
            amount,
            entry.orderID or "",
            entry.cycleID or "",
            entry.description or ""
        ])

    return headers, rows


def bonus_pool_cycles_report(session: Session, params: Dict[str, Any]) -> Tuple[List[str], List[List[Any]]]:
    headers = ["Cycle", "Status", "Start", "End", "Total Sales", "Pool", "Carried In", "Tokens", "Per Token",
               "Distributed", "Unallocated", "Payouts", "Settled At"]

    cycles = session.query(BonusPoolCycle).order_by(BonusPoolCycle.cycleNumber).all()

    rows = []
    for cycle in cycles:
        rows.append([
            cycle.cycleNumber,
            cycle.status,
            cycle.startAt.strftime("%Y-%m-%d %H:%M") if cycle.startAt else "",
            cycle.endAt.strftime("%Y-%m-%d %H:%M") if cycle.endAt else "",
            _cents(cycle.totalSales),
            _cents(cycle.poolAmount),
            _cents(cycle.carriedInAmount),
            cycle.totalTokens or 0,
            str(cycle.perTokenValue) if cycle.perTokenValue is not None else "",
            _cents(cycle.distributedAmount),
            _cents(cycle.unallocatedAmount),
            cycle.payoutCount or 0,
            cycle.settledAt.strftime("%Y-%m-%d %H:%M:%S") if cycle.settledAt else ""
        ])

    return headers, rows


def cycle_payouts_report(session: Session, params: Dict[str, Any]) -> Tuple[List[str], List[List[Any]]]:
    """Payout entries of one cycle. Requires params['cycleId']."""
    if params.get("cycleId") is None:
        raise ValueError("cycleId is required for the cycle payouts report")

    headers = ["Entry ID", "Member ID", "Member", "Amount", "Date"]

    entries = session.query(LedgerEntry, Member.name).outerjoin(
        Member, Member.memberID == LedgerEntry.ownerID
    ).filter(
        LedgerEntry.cycleID == int(params["cycleId"]),
        LedgerEntry.entryType == "bonus_pool_payout"
    ).order_by(LedgerEntry.entryID).all()

    rows = [
        [
            entry.entryID,
            entry.ownerID,
            memberName or "",
            _cents(entry.amount),
            entry.createdAt.strftime("%Y-%m-%d %H:%M:%S") if entry.createdAt else ""
        ]
        for entry, memberName in entries
    ]

    return headers, rows


def failed_steps_report(session: Session, params: Dict[str, Any]) -> Tuple[List[str], List[List[Any]]]:
    """Order completion steps awaiting admin follow-up."""
    headers = ["Order", "Step", "Attempts", "Error", "Updated"]

    steps = session.query(OrderCompletionStep).filter(
        OrderCompletionStep.status == "failed"
    ).order_by(OrderCompletionStep.updatedAt.desc()).all()

    rows = [
        [
            step.orderID,
            step.step,
            step.attempts,
            step.error or "",
            step.updatedAt.strftime("%Y-%m-%d %H:%M:%S") if step.updatedAt else ""
        ]
        for step in steps
    ]

    return headers, rows
