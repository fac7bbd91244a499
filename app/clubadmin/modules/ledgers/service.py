from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.clubadmin.audit import record_event
from app.clubadmin.models import User
from app.clubadmin.modules.ledgers.models import LedgerAccount, LedgerEntry, LedgerTransaction, Payment
from app.clubadmin.money import parse_money, to_cents

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

BASIC_ACCOUNTS = (
    ("cash", "asset", "Cash account for holding funds"),
    ("stripe_account", "asset", "Stripe account balance"),
    ("accounts_receivable", "asset", "Outstanding payments from customers"),
    ("accounts_payable", "liability", "Outstanding payments to vendors"),
    ("deferred_revenue", "liability", "Prepaid subscriptions and bookings"),
    ("refund_liability", "liability", "Pending refunds"),
    ("membership_revenue", "revenue", "Revenue from membership subscriptions"),
    ("event_revenue", "revenue", "Revenue from event registrations"),
    ("booking_revenue", "revenue", "Revenue from cabin bookings"),
    ("tahoe_booking_revenue", "revenue", "Revenue from Tahoe cabin bookings"),
    ("clear_lake_booking_revenue", "revenue", "Revenue from Clear Lake cabin bookings"),
    ("donation_revenue", "revenue", "Revenue from donations"),
    ("stripe_fees", "expense", "Stripe processing fees"),
    ("operating_expenses", "expense", "General operating expenses"),
    ("refund_expense", "expense", "Refunds issued to customers"),
)

CREDIT_ENTITY_TYPES = ("administration", "event", "membership", "booking", "donation")
MAX_REASON_LENGTH = 1000
RECENT_PAYMENTS_LIMIT = 50


class LedgerError(RuntimeError):
    pass


class RefundError(LedgerError):
    pass


def ensure_basic_accounts(s: "Session") -> list[LedgerAccount]:
    existing = {a.name: a for a in s.query(LedgerAccount).all()}
    for name, account_type, description in BASIC_ACCOUNTS:
        if name not in existing:
            account = LedgerAccount(name=name, account_type=account_type, description=description)
            s.add(account)
            existing[name] = account
    s.flush()
    return list(existing.values())


def get_account(s: "Session", name: str) -> LedgerAccount:
    account = s.query(LedgerAccount).filter(LedgerAccount.name == name).one_or_none()
    if account is None:
        raise LedgerError(f"Ledger account not found: {name}")
    return account


def revenue_account_name(entity_type: str | None, property: str | None = None) -> str:
    if entity_type == "event":
        return "event_revenue"
    if entity_type == "booking":
        if property == "tahoe":
            return "tahoe_booking_revenue"
        if property == "clear_lake":
            return "clear_lake_booking_revenue"
        return "booking_revenue"
    if entity_type == "donation":
        return "donation_revenue"
    return "membership_revenue"


def _reference_id() -> str:
    return f"PAY-{datetime.utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def _entry(
    s: "Session",
    account: LedgerAccount,
    payment: Payment,
    transaction: LedgerTransaction,
    amount: Decimal,
    description: str,
    related_entity_type: str | None,
    related_entity_id: str | None,
) -> LedgerEntry:
    entry = LedgerEntry(
        account_id=account.id,
        payment_id=payment.id,
        transaction_id=transaction.id,
        amount=to_cents(amount),
        description=description,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
    )
    s.add(entry)
    return entry


def process_payment(
    s: "Session",
    *,
    user: User | None,
    amount: Decimal,
    entity_type: str,
    entity_id: str | None = None,
    external_payment_id: str | None = None,
    stripe_fee: Decimal | None = None,
    description: str | None = None,
    property: str | None = None,
) -> tuple[Payment, LedgerTransaction, list[LedgerEntry]]:
    """
    Completed payment: debit stripe_account, credit the revenue account for the entity type.
    A processing fee moves from stripe_account to stripe_fees.
    """
    amount = to_cents(amount)
    if amount <= 0:
        raise LedgerError("Payment amount must be positive")
    ensure_basic_accounts(s)
    description = description or "Payment"

    payment = Payment(
        reference_id=_reference_id(),
        user_id=user.id if user else None,
        amount=amount,
        status="completed",
        external_payment_id=external_payment_id,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        payment_date=datetime.utcnow(),
    )
    s.add(payment)
    s.flush()
    transaction = LedgerTransaction(type="payment", payment_id=payment.id, total_amount=amount, status="completed")
    s.add(transaction)
    s.flush()

    stripe_account = get_account(s, "stripe_account")
    revenue_account = get_account(s, revenue_account_name(entity_type, property))
    entries = [
        _entry(s, stripe_account, payment, transaction, amount,
               f"Payment receivable from Stripe: {description}", entity_type, entity_id),
        _entry(s, revenue_account, payment, transaction, amount,
               f"Revenue from {entity_type}: {description}", entity_type, entity_id),
    ]
    if stripe_fee and stripe_fee > 0:
        fee = to_cents(stripe_fee)
        entries.append(
            _entry(s, get_account(s, "stripe_fees"), payment, transaction, fee,
                   f"Stripe processing fee for payment {payment.reference_id}", "administration", str(payment.id))
        )
        entries.append(
            _entry(s, stripe_account, payment, transaction, -fee,
                   f"Stripe fee deduction from receivable - {payment.reference_id}", "administration", str(payment.id))
        )
    s.flush()
    return payment, transaction, entries


def refunded_total(s: "Session", payment: Payment) -> Decimal:
    total = (
        s.query(func.coalesce(func.sum(LedgerTransaction.total_amount), 0))
        .filter(LedgerTransaction.payment_id == payment.id, LedgerTransaction.type == "refund")
        .scalar()
    )
    return to_cents(Decimal(str(total or 0)))


def _revenue_entry_for(s: "Session", payment: Payment) -> LedgerEntry | None:
    return (
        s.query(LedgerEntry)
        .join(LedgerAccount, LedgerEntry.account_id == LedgerAccount.id)
        .filter(
            LedgerEntry.payment_id == payment.id,
            LedgerAccount.account_type == "revenue",
            LedgerEntry.amount > 0,
        )
        .order_by(LedgerEntry.id.asc())
        .first()
    )


def payment_for_update(s: "Session", payment_id: int):
    """Locks the payment row (SELECT ... FOR UPDATE on Postgres) until the refund commits."""
    return s.query(Payment).filter(Payment.id == payment_id).with_for_update().populate_existing()


def process_refund(
    s: "Session",
    *,
    payment_id: int,
    amount: Decimal,
    reason: str,
    external_refund_id: str | None,
    actor: User | None,
) -> tuple[LedgerTransaction, list[LedgerEntry]]:
    """
    Debit refund_expense, credit stripe_account and reverse the original revenue entry.
    Raises RefundError when the payment cannot take this refund.
    """
    amount = to_cents(amount)
    if amount <= 0:
        raise RefundError("Refund amount must be positive")
    payment = payment_for_update(s, payment_id).one_or_none()
    if payment is None:
        raise RefundError(f"Payment {payment_id} not found")
    if payment.status != "completed":
        raise RefundError(f"Payment {payment.reference_id} is {payment.status} and cannot be refunded")
    already = refunded_total(s, payment)
    remaining = to_cents(payment.amount) - already
    if amount > remaining:
        raise RefundError(f"Refund exceeds the refundable amount ({remaining})")

    ensure_basic_accounts(s)
    transaction = LedgerTransaction(
        type="refund",
        payment_id=payment.id,
        total_amount=amount,
        status="completed",
        reason=reason,
        external_id=external_refund_id,
    )
    s.add(transaction)
    s.flush()

    entries = [
        _entry(s, get_account(s, "refund_expense"), payment, transaction, amount,
               f"Refund issued: {reason}", "administration", str(payment.id)),
        _entry(s, get_account(s, "stripe_account"), payment, transaction, -amount,
               f"Refund processed through Stripe: {reason}", "administration", str(payment.id)),
    ]
    revenue_entry = _revenue_entry_for(s, payment)
    if revenue_entry is not None:
        entries.append(
            _entry(s, revenue_entry.account, payment, transaction, -amount,
                   f"Revenue reversal for refund: {reason}", "administration", str(payment.id))
        )

    if already + amount == to_cents(payment.amount):
        payment.status = "refunded"

    record_event(
        s,
        actor=actor,
        action="ledger.refund",
        entity_type="Payment",
        entity_id=str(payment.id),
        reason=reason,
        metadata={
            "amount": str(amount),
            "external_refund_id": external_refund_id,
            "payment_status": payment.status,
        },
    )
    s.flush()
    logger.info("Refund of %s recorded against payment %s", amount, payment.reference_id)
    return transaction, entries


def add_credit(
    s: "Session",
    *,
    user: User,
    amount: Decimal,
    reason: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor: User | None,
) -> tuple[Payment, LedgerTransaction, list[LedgerEntry]]:
    """
    Credit a member: virtual completed payment, adjustment transaction,
    debit accounts_receivable and credit cash.
    """
    amount = to_cents(amount)
    if amount <= 0:
        raise LedgerError("Credit amount must be positive")
    ensure_basic_accounts(s)
    related_type = entity_type or "administration"

    payment = Payment(
        reference_id=_reference_id(),
        user_id=user.id,
        amount=amount,
        status="completed",
        external_payment_id=f"credit_{uuid.uuid4().hex}",
        entity_type=related_type,
        entity_id=entity_id,
        description=f"Credit: {reason}",
        payment_date=datetime.utcnow(),
    )
    s.add(payment)
    s.flush()
    related_id = entity_id or str(payment.id)
    transaction = LedgerTransaction(
        type="adjustment", payment_id=payment.id, total_amount=amount, status="completed", reason=reason
    )
    s.add(transaction)
    s.flush()

    entries = [
        _entry(s, get_account(s, "accounts_receivable"), payment, transaction, amount,
               f"Credit issued: {reason}", related_type, related_id),
        _entry(s, get_account(s, "cash"), payment, transaction, -amount,
               f"Customer credit liability: {reason}", related_type, related_id),
    ]
    record_event(
        s,
        actor=actor,
        action="ledger.credit",
        entity_type="User",
        entity_id=str(user.id),
        reason=reason,
        metadata={"amount": str(amount), "payment_id": payment.id, "entity_type": related_type, "entity_id": entity_id},
    )
    s.flush()
    return payment, transaction, entries


def accounts_with_balances(
    s: "Session", start: date | None = None, end: date | None = None
) -> list[tuple[LedgerAccount, Decimal]]:
    """
    Balance per account; with a date range only entries whose payment falls inside it (inclusive).
    """
    q = s.query(LedgerEntry.account_id, func.coalesce(func.sum(LedgerEntry.amount), 0))
    if start or end:
        q = q.join(Payment, LedgerEntry.payment_id == Payment.id)
        if start:
            q = q.filter(Payment.payment_date >= datetime.combine(start, time.min))
        if end:
            q = q.filter(Payment.payment_date < datetime.combine(end + timedelta(days=1), time.min))
    sums = {account_id: to_cents(Decimal(str(total))) for account_id, total in q.group_by(LedgerEntry.account_id).all()}
    accounts = s.query(LedgerAccount).order_by(LedgerAccount.account_type.asc(), LedgerAccount.name.asc()).all()
    return [(a, sums.get(a.id, Decimal("0.00"))) for a in accounts]


def recent_payments(
    s: "Session", start: date | None = None, end: date | None = None, limit: int = RECENT_PAYMENTS_LIMIT
) -> list[Payment]:
    q = s.query(Payment)
    if start:
        q = q.filter(Payment.payment_date >= datetime.combine(start, time.min))
    if end:
        q = q.filter(Payment.payment_date < datetime.combine(end + timedelta(days=1), time.min))
    return q.order_by(Payment.payment_date.desc(), Payment.id.desc()).limit(limit).all()


def entries_for_payment(s: "Session", payment: Payment) -> list[LedgerEntry]:
    return s.query(LedgerEntry).filter(LedgerEntry.payment_id == payment.id).order_by(LedgerEntry.id.asc()).all()


# ---------- Form validation ----------
def _validate_amount(raw, errors: dict[str, list[str]]) -> Decimal | None:
    raw = "" if raw is None else str(raw).strip()
    if not raw:
        errors.setdefault("amount", []).append("can't be blank")
        return None
    try:
        amount = parse_money(raw)
    except ValueError:
        errors.setdefault("amount", []).append("invalid amount format")
        return None
    if amount <= 0:
        errors.setdefault("amount", []).append("must be positive")
        return None
    return amount


def _validate_reason(raw, errors: dict[str, list[str]]) -> str:
    reason = (raw or "").strip()
    if not reason:
        errors.setdefault("reason", []).append("can't be blank")
    elif len(reason) > MAX_REASON_LENGTH:
        errors.setdefault("reason", []).append(f"should be at most {MAX_REASON_LENGTH} character(s)")
    return reason


def validate_refund_form(payload: dict) -> tuple[dict[str, list[str]], Decimal | None]:
    errors: dict[str, list[str]] = {}
    if not str(payload.get("payment_id") or "").strip():
        errors.setdefault("payment_id", []).append("can't be blank")
    amount = _validate_amount(payload.get("amount"), errors)
    _validate_reason(payload.get("reason"), errors)
    return errors, amount


def validate_credit_form(payload: dict) -> tuple[dict[str, list[str]], Decimal | None]:
    errors: dict[str, list[str]] = {}
    if not str(payload.get("user_id") or "").strip():
        errors.setdefault("user_id", []).append("can't be blank")
    amount = _validate_amount(payload.get("amount"), errors)
    _validate_reason(payload.get("reason"), errors)
    entity_type = (payload.get("entity_type") or "").strip()
    if entity_type and entity_type not in CREDIT_ENTITY_TYPES:
        errors.setdefault("entity_type", []).append("is invalid")
    return errors, amount
