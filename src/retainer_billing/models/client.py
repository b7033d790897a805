"""Client company and retainer agreement models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from retainer_billing.errors import ConfigurationError
from retainer_billing.models.base import Base, TimestampMixin


class ClientCompany(Base, TimestampMixin):
    """A client billed under retainer agreements."""

    __tablename__ = "client_company"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String, nullable=False)


class ClientAgreement(Base, TimestampMixin):
    """Retainer contract terms in effect for a company."""

    __tablename__ = "client_agreement"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_company.id", ondelete="CASCADE"),
        nullable=False,
    )
    active_date: Mapped[date] = mapped_column(Date, nullable=False)
    termination_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    monthly_retainer_hours: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    catch_up_threshold_hours: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    monthly_retainer_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rollover_months: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("rollover_months >= 0", name="client_agreement_rollover_check"),
        CheckConstraint(
            "termination_date IS NULL OR termination_date >= active_date",
            name="client_agreement_dates_check",
        ),
    )

    def validate(self) -> None:
        """Validate contract terms, raising ConfigurationError if invalid."""
        retainer = Decimal(self.monthly_retainer_hours)
        threshold = Decimal(self.catch_up_threshold_hours or 0)

        if retainer < 0:
            raise ConfigurationError("monthly_retainer_hours must not be negative")
        if threshold < 0 or threshold > retainer:
            raise ConfigurationError(
                "catch_up_threshold_hours must be between 0 and monthly_retainer_hours"
            )
        if Decimal(self.hourly_rate) < 0 or Decimal(self.monthly_retainer_fee) < 0:
            raise ConfigurationError("hourly_rate and monthly_retainer_fee must not be negative")
        if self.rollover_months is None or self.rollover_months < 0:
            raise ConfigurationError("rollover_months must be zero or greater")
        if self.termination_date is not None and self.termination_date < self.active_date:
            raise ConfigurationError("termination_date must not precede active_date")

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if the agreement is in effect on a date."""
        if self.active_date > as_of_date:
            return False
        return self.termination_date is None or self.termination_date >= as_of_date

    def terminated_before(self, as_of_date: date) -> bool:
        return self.termination_date is not None and self.termination_date < as_of_date
