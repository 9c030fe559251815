"""
Schemas for the event roster (Pydantic models)
Each stored model maps to a collection: Student -> "attendance", Family -> "family".
Rows coming out of the store and payloads coming in over HTTP are parsed here
before anything else touches them.
"""

import os
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _load_slots() -> tuple:
    raw = os.getenv("ARRIVAL_SLOTS")
    if raw:
        labels = tuple(s.strip() for s in raw.split(",") if s.strip())
        if labels:
            return labels
    return ("29th", "30th 9:00 am", "30th 12:00 pm", "30th 4:00 pm")


# Canonical arrival slot labels, shared by the check-in form and the aggregator
ARRIVAL_SLOTS = _load_slots()


def _slot_key(label: str) -> str:
    return re.sub(r"\s+", "", label).lower()


_SLOT_INDEX = {_slot_key(s): s for s in ARRIVAL_SLOTS}


def canonical_slot(label: Optional[str]) -> Optional[str]:
    """Map a slot label onto its canonical spelling.

    "30th 9:00am" and "30th 9:00 AM" both become "30th 9:00 am". Labels outside
    the vocabulary come back stripped, blank labels come back as None.
    """
    if label is None:
        return None
    label = label.strip()
    if not label:
        return None
    return _SLOT_INDEX.get(_slot_key(label), label)


def is_known_slot(label: str) -> bool:
    return _slot_key(label) in _SLOT_INDEX


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # rows written by the Mongo driver come back naive, imported rows carry an offset
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# ----------------------- Stored records -----------------------

class Student(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Union[int, str]
    name: str = Field(..., min_length=1)
    class_name: str = Field(..., alias="class", min_length=1)
    male: Optional[int] = Field(None, ge=0)
    female: Optional[int] = Field(None, ge=0)
    when_reach: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, v):
        return _as_utc(v)


class FamilyMember(BaseModel):
    relationship: Optional[str] = ""
    name: Optional[str] = ""


class Family(BaseModel):
    id: Union[int, str]
    student_id: str
    mother_name: Optional[str] = None
    father_name: Optional[str] = None
    grandmother_name: Optional[str] = None
    grandfather_name: Optional[str] = None
    brother_name: Optional[str] = None
    sister_name: Optional[str] = None
    others: List[FamilyMember] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator("student_id", mode="before")
    @classmethod
    def _stringify_student_id(cls, v):
        # the hosted tables stored this as a number in some revisions
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("others", mode="before")
    @classmethod
    def _null_others(cls, v):
        return [] if v is None else v

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, v):
        return _as_utc(v)


RELATION_FIELDS = (
    "mother_name",
    "father_name",
    "grandmother_name",
    "grandfather_name",
    "brother_name",
    "sister_name",
)


# ----------------------- Derived views -----------------------

class StudentView(Student):
    is_registered: bool = False
    family_details: Optional[Family] = None


class FamilyListing(Family):
    student_name: str
    student_class: str
    is_registered: bool = False


class SlotCount(BaseModel):
    male: int = 0
    female: int = 0


class AttendanceSummary(BaseModel):
    total_students: int = 0
    total_males: int = 0
    total_females: int = 0
    grand_total: int = 0
    by_slot: Dict[str, SlotCount] = Field(default_factory=dict)


class RegistrationSummary(BaseModel):
    total_students: int = 0
    total_registered: int = 0
    total_unregistered: int = 0
    counts_by_class: Dict[str, int] = Field(default_factory=dict)


# ----------------------- Request payloads -----------------------

class _SlotPayload(BaseModel):
    when_reach: Optional[str] = None

    @field_validator("when_reach")
    @classmethod
    def _canonical_when_reach(cls, v):
        if v is None or not v.strip():
            return None
        if not is_known_slot(v):
            raise ValueError(f"unknown arrival slot {v!r}, expected one of {list(ARRIVAL_SLOTS)}")
        return canonical_slot(v)


class CreateStudent(_SlotPayload):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    class_name: str = Field(..., alias="class", min_length=1)
    male: Optional[int] = Field(None, ge=0)
    female: Optional[int] = Field(None, ge=0)


class UpdateStudent(CreateStudent):
    pass


class SubmitAttendance(_SlotPayload):
    male: Optional[int] = Field(None, ge=0)
    female: Optional[int] = Field(None, ge=0)


class FamilyMemberIn(BaseModel):
    relationship: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class SaveFamily(BaseModel):
    student_id: str = Field(..., min_length=1)
    mother_name: Optional[str] = None
    father_name: Optional[str] = None
    grandmother_name: Optional[str] = None
    grandfather_name: Optional[str] = None
    brother_name: Optional[str] = None
    sister_name: Optional[str] = None
    others: List[FamilyMemberIn] = Field(default_factory=list)


class MutationResult(BaseModel):
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None
    missing: bool = Field(False, exclude=True)
