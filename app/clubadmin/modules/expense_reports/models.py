from __future__ import annotations

import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.clubadmin.models import Base

if TYPE_CHECKING:
    from app.clubadmin.models import User


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    # Fernet tokens; never log or render these
    routing_number_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    account_number_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    account_number_last_4: Mapped[str] = mapped_column(String(4), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", lazy="selectin")

    def __repr__(self) -> str:
        return f"<BankAccount id={self.id} user_id={self.user_id} last_4={self.account_number_last_4}>"


class ExpenseReport(Base):
    __tablename__ = "expense_reports"
    __table_args__ = (
        Index("idx_expense_reports_user", "user_id"),
        Index("idx_expense_reports_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    reimbursement_method: Mapped[str] = mapped_column(String(16), nullable=False)  # check, bank_transfer
    # draft, submitted, approved, rejected, paid
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    certification_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    bank_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("bank_accounts.id", ondelete="SET NULL"), nullable=True
    )
    mailing_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", lazy="selectin")
    bank_account: Mapped["BankAccount | None"] = relationship(lazy="selectin")
    expense_items: Mapped[list["ExpenseReportItem"]] = relationship(
        back_populates="expense_report",
        cascade="all, delete-orphan",
        order_by="ExpenseReportItem.id",
        lazy="selectin",
    )
    income_items: Mapped[list["ExpenseReportIncomeItem"]] = relationship(
        back_populates="expense_report",
        cascade="all, delete-orphan",
        order_by="ExpenseReportIncomeItem.id",
        lazy="selectin",
    )


class ExpenseReportItem(Base):
    __tablename__ = "expense_report_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_report_id: Mapped[int] = mapped_column(
        ForeignKey("expense_reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    vendor: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    receipt_s3_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    expense_report: Mapped[ExpenseReport] = relationship(back_populates="expense_items")


class ExpenseReportIncomeItem(Base):
    __tablename__ = "expense_report_income_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_report_id: Mapped[int] = mapped_column(
        ForeignKey("expense_reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    proof_s3_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    expense_report: Mapped[ExpenseReport] = relationship(back_populates="income_items")
