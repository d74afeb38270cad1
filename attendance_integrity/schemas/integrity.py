from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AnalyzeGapsIn(BaseModel):
    dates: List[date] = Field(min_length=1, max_length=62)


class HealBounds(BaseModel):
    day: date
    start_id: int = Field(ge=1)
    end_id: int = Field(ge=1)

    @model_validator(mode="after")
    def _check_order(self):
        if self.end_id < self.start_id:
            raise ValueError("end_id must be >= start_id")
        return self


class HealGapsIn(BaseModel):
    dates: List[date] = Field(min_length=1, max_length=31)
    bounds: Optional[List[HealBounds]] = None

    @field_validator("bounds")
    @classmethod
    def _unique_bound_dates(cls, v):
        if v and len({b.day for b in v}) != len(v):
            raise ValueError("Only one bound per date")
        return v


class DuplicateCleanupIn(BaseModel):
    hours: Optional[int] = Field(default=None, ge=1, le=24 * 31)
