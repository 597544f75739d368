from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SubmitDeviceRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    reportType: Optional[str] = None
    reason: Optional[str] = None


class ProcessDeviceRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    returnDate: Optional[date] = None
