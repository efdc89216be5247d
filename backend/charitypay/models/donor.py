"""
Donor model.
"""
from typing import Optional
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel


class Donor(BaseModel):
    """A person giving donations, linked to a processor customer."""
    __tablename__ = "donors"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Donor {self.email}>"
