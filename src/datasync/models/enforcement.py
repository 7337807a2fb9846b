"""Enforcement record models populated by the bundled sync jobs."""
from datetime import date, datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class Case(SQLModel, table=True):
    """A prosecution case published by a regulator."""

    __tablename__ = "cases"

    id: Optional[int] = Field(default=None, primary_key=True)
    regulator_id: str = Field(index=True, unique=True)
    offender_name: str
    agency_code: Optional[str] = None
    offence_action_date: Optional[date] = None
    offence_result: Optional[str] = None
    offence_fine: Optional[float] = None
    offence_costs: Optional[float] = None
    offence_breaches: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Notice(SQLModel, table=True):
    """An enforcement notice (improvement, prohibition) served on an offender."""

    __tablename__ = "notices"

    id: Optional[int] = Field(default=None, primary_key=True)
    regulator_id: str = Field(index=True, unique=True)
    offender_name: str
    agency_code: Optional[str] = None
    offence_action_type: Optional[str] = None
    notice_date: Optional[date] = None
    compliance_date: Optional[date] = None
    notice_body: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
