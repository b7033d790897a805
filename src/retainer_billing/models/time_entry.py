"""Time entry model."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from retainer_billing.models.base import Base, TimestampMixin


class ClientTimeEntry(Base, TimestampMixin):
    """Worked minutes recorded against a client.

    A null client_invoice_line_id means the entry is unbilled. Split
    fragments are stored as ordinary rows sharing the same merge key
    (date_worked, user_id, name, project_id, task_id).
    """

    __tablename__ = "client_time_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client_company.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    task_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    creator_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    minutes_worked: Mapped[int] = mapped_column(Integer, nullable=False)
    date_worked: Mapped[date] = mapped_column(Date, nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    job_type: Mapped[str | None] = mapped_column(String, nullable=True)
    client_invoice_line_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("client_invoice_line.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("minutes_worked > 0", name="client_time_entry_minutes_check"),
        Index("ix_client_time_entry_company_date", "client_company_id", "date_worked"),
        Index("ix_client_time_entry_line", "client_invoice_line_id"),
    )

    @property
    def hours(self) -> Decimal:
        return Decimal(self.minutes_worked) / Decimal(60)

    @property
    def is_linked(self) -> bool:
        return self.client_invoice_line_id is not None

    @property
    def merge_key(self) -> tuple[date, int, str, int | None, int | None]:
        """Identity under which split fragments may be recombined."""
        return (self.date_worked, self.user_id, self.name, self.project_id, self.task_id)
