"""Slot domain schemas - Pydantic models for validation"""

from datetime import date

from pydantic import BaseModel, field_validator, model_validator

from ...shared.validators import validate_hhmm, validate_time_window


class SlotWindow(BaseModel):
    """One bookable window in a day schedule"""

    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return validate_hhmm(v)

    @model_validator(mode="after")
    def validate_window(self):
        validate_time_window(self.start_time, self.end_time)
        return self


class TimeSlotResponse(BaseModel):
    id: int
    staff_id: int
    date: date
    start_time: str
    end_time: str
    is_available: bool

    class Config:
        from_attributes = True


class AvailableDatesResponse(BaseModel):
    merchant_id: int
    dates: list[date]
