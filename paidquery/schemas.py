import re
from datetime import date as Date
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


class ReportRequest(BaseModel):
    domain: str = Field(..., min_length=1, validation_alias=AliasChoices("domain", "pokt_node_domain"))
    date: str
    payor_address: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("payorAddress", "payor-address", "payor_address"),
    )

    @field_validator("domain", "payor_address", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("date")
    @classmethod
    def validate_calendar_date(cls, value: str) -> str:
        if not DATE_PATTERN.fullmatch(value):
            raise ValueError("must use the YYYY-MM-DD format")
        try:
            Date.fromisoformat(value)
        except ValueError:
            raise ValueError("is not a valid calendar date") from None
        return value


class RequestCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    secret: str
    message: str
    status_url: str = Field(..., serialization_alias="statusUrl")


class JobView(BaseModel):
    secret: str
    status: str
    message: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    filename: Optional[str] = None


class StatusResponse(BaseModel):
    status: str
    message: str
