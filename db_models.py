from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def phone_as_string(cls, value):
        # clients commonly send the phone number as a bare JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ContactResponse(BaseModel):
    primaryContatctId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]

    @classmethod
    def empty(cls) -> "ContactResponse":
        """Zero payload returned alongside every failure status."""
        return cls(primaryContatctId=0, emails=[], phoneNumbers=[], secondaryContactIds=[])


class FinalResponse(BaseModel):
    contact: ContactResponse
