"""Request/response bodies shared by the report routers."""

from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from reportops.models import DEFAULT_QUERY_LIMIT, DateRange, QueryOptions
from reportops.util import parse_iso_date


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DateRangeBody(_Body):
    start: date
    end: date

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse(cls, value: Any) -> Any:
        # Accept full ISO timestamps from the date picker
        if isinstance(value, str):
            return parse_iso_date(value)
        return value

    @model_validator(mode="after")
    def _ordered(self) -> "DateRangeBody":
        if self.start > self.end:
            raise ValueError("dateRange.start must not be after dateRange.end")
        return self

    def to_range(self) -> DateRange:
        return DateRange(self.start, self.end)


class TimeseriesRequest(_Body):
    date_range: DateRangeBody = Field(alias="dateRange")


class SessionQueryRequest(_Body):
    date_range: DateRangeBody = Field(alias="dateRange")
    dimensions: list[str] = Field(min_length=1)
    sort_by: str | None = Field(default=None, alias="sortBy")
    sort_direction: Literal["ASC", "DESC"] = Field(default="DESC", alias="sortDirection")

    def to_options(self) -> QueryOptions:
        return QueryOptions(
            date_range=self.date_range.to_range(),
            dimensions=tuple(self.dimensions),
            sort_by=self.sort_by,
            sort_direction=self.sort_direction,
        )


class QueryRequest(SessionQueryRequest):
    depth: int = Field(default=0, ge=0)
    parent_filters: dict[str, str] | None = Field(default=None, alias="parentFilters")

    def to_options(self) -> QueryOptions:
        return QueryOptions(
            date_range=self.date_range.to_range(),
            dimensions=tuple(self.dimensions),
            depth=self.depth,
            parent_filters=self.parent_filters or {},
            sort_by=self.sort_by,
            sort_direction=self.sort_direction,
            limit=DEFAULT_QUERY_LIMIT,
        )


class ValidationRateRequest(QueryRequest):
    rate_type: Literal["approval", "pay", "buy"] = Field(alias="rateType")
    time_period: Literal["weekly", "biweekly", "monthly"] = Field(default="biweekly", alias="timePeriod")


class QueryResponse(BaseModel):
    success: bool
    data: list[dict[str, Any]] | None = None
    error: str | None = None
    truncated: bool | None = None


class ValidationRateResponse(QueryResponse):
    periodColumns: list[dict[str, str]] | None = None
