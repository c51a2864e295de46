from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so stored and submitted values compare."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def follow_up_dates_in_order(contacted_date: datetime, follow_up_date: datetime) -> bool:
    return as_utc(follow_up_date) > as_utc(contacted_date)


FOLLOW_UP_DATE_ORDER_MESSAGE = "Follow-up date must be after contacted date"


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PageParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self, total: int) -> PaginationMeta:
        return PaginationMeta(page=self.page, limit=self.limit, total=total, pages=math.ceil(total / self.limit))


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None
    conversion_status: str
    finalization_status: str | None
    finalized_by_id: str | None
    finalized_at: datetime | None
    assigned_data_collector_id: str | None
    assigned_converter_id: str | None
    is_public: bool
    created_at: datetime
    updated_at: datetime


class CompanyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    conversion_status: Literal["Waiting", "NoReach", "Contacted", "Negotiating", "Confirmed"] | None = None
    assigned_data_collector_id: str | None = None
    assigned_converter_id: str | None = None
    is_public: bool | None = None


class CompanyPage(BaseModel):
    data: list[CompanyRead]
    pagination: PaginationMeta


class BulkApprovalRequest(BaseModel):
    ids: list[str] = Field(min_length=1)
    action: Literal["approve", "reject"]


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class BulkActionResult(BaseModel):
    message: str
    updated: int


class FollowUpCreate(BaseModel):
    company_id: str = Field(min_length=1)
    contacted_date: datetime
    follow_up_date: datetime
    follow_up_notes: str | None = None

    @model_validator(mode="after")
    def _check_date_order(self) -> FollowUpCreate:
        if not follow_up_dates_in_order(self.contacted_date, self.follow_up_date):
            raise ValueError(FOLLOW_UP_DATE_ORDER_MESSAGE)
        return self


class FollowUpUpdate(BaseModel):
    contacted_date: datetime | None = None
    follow_up_date: datetime | None = None
    follow_up_notes: str | None = None

    @model_validator(mode="after")
    def _check_date_order(self) -> FollowUpUpdate:
        if self.contacted_date is not None and self.follow_up_date is not None:
            if not follow_up_dates_in_order(self.contacted_date, self.follow_up_date):
                raise ValueError(FOLLOW_UP_DATE_ORDER_MESSAGE)
        return self


class FollowUpRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    contacted_date: datetime
    follow_up_date: datetime
    follow_up_notes: str | None
    contacted_by_id: str | None
    created_at: datetime
    updated_at: datetime


class DeletionRequestCreate(BaseModel):
    followup_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, min_length=10)


class DeletionRequestReview(BaseModel):
    action: Literal["approve", "reject"]
    rejection_reason: str | None = None


class DeletionRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    followup_id: str
    company_id: str
    requested_by_id: str
    reason: str | None
    status: str
    reviewed_by_id: str | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    created_at: datetime


class DeletionRequestListItem(DeletionRequestRead):
    company_name: str | None = None
    requested_by_email: str | None = None
    follow_up_date: datetime | None = None


class TaskUpdate(BaseModel):
    status: str | None = Field(default=None, min_length=1)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str | None
    status: str
    company_id: str | None
    assigned_to_id: str | None
    raised_by_id: str | None
    updated_at: datetime


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subject: str
    description: str | None
    status: str
    assigned_to_id: str | None
    raised_by_id: str | None
    created_at: datetime
