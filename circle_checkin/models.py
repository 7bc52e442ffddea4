"""Records, request inputs and structured results."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidInputError


class Cadence(str, Enum):
    HOURLY = "hourly"
    TWICE_DAILY = "twice-daily"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class Channel(str, Enum):
    WEB_PUSH = "web-push"
    NATIVE_PUSH = "native-push"


# Records

class EmergencyContact(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None


class User(BaseModel):
    id: str = Field(min_length=1)
    display_name: str = ""
    cadence: Cadence = Cadence.DAILY
    custom_hours: Optional[int] = Field(default=None, ge=1, le=168)
    streak: int = Field(default=0, ge=0)
    notify_circle_on_checkin: bool = True
    emergency_alert_enabled: bool = False
    emergency_contact: Optional[EmergencyContact] = None


class CheckIn(BaseModel):
    id: str
    user_id: str
    timestamp: datetime


class Circle(BaseModel):
    id: str
    name: str
    owner_id: str
    member_ids: List[str] = []


class DeviceEndpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    channel: Channel = Channel.WEB_PUSH


class DistressAlert(BaseModel):
    id: str
    actor_id: str
    actor_name: str
    circle_id: Optional[str] = None
    recipient_id: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    resolved: bool = False


# Alert targets: exactly one of these is chosen per not-okay alert

@dataclass(frozen=True)
class PersonTarget:
    recipient_id: str


@dataclass(frozen=True)
class CircleTarget:
    circle_id: str


@dataclass(frozen=True)
class AllCirclesTarget:
    pass


Target = Union[PersonTarget, CircleTarget, AllCirclesTarget]


def target_from_fields(recipient_id: Optional[str] = None, circle_id: Optional[str] = None) -> Target:
    """A recipient wins over a circle; neither means every circle of the actor."""
    if recipient_id:
        return PersonTarget(recipient_id)
    if circle_id:
        return CircleTarget(circle_id)
    return AllCirclesTarget()


@dataclass(frozen=True)
class Notification:
    title: str
    body: str


# Inputs

class CheckInInput(BaseModel):
    user_id: str = Field(min_length=1)


class ReminderInput(BaseModel):
    recipient_id: str = Field(min_length=1)
    sender_name: str = Field(min_length=1)
    recipient_name: str = Field(min_length=1)


class InactiveRemindersInput(BaseModel):
    circle_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    sender_name: str = Field(min_length=1)


class NotifyCircleInput(BaseModel):
    user_id: str = Field(min_length=1)
    user_name: str = Field(min_length=1)


class NotOkayInput(BaseModel):
    actor_id: str = Field(min_length=1)
    actor_name: str = Field(min_length=1)
    recipient_id: Optional[str] = None
    circle_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=200)


class EmergencyAlertInput(BaseModel):
    user_id: str = Field(min_length=1)
    user_name: str = Field(min_length=1)
    days_since_last_check_in: int = Field(ge=0)


def validate_input(model, **fields):
    try:
        return model(**fields)
    except ValidationError as e:
        raise InvalidInputError(f"Invalid input: {e.error_count()} field error(s).") from e


# Results

class DispatchResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0

    def absorb(self, other: "DispatchResult") -> None:
        self.success_count += other.success_count
        self.failure_count += other.failure_count


class CheckInResult(BaseModel):
    success: bool
    message: str
    streak: Optional[int] = None
    checkin_id: Optional[str] = None
    wait_reason: Optional[str] = None


class NotifyResult(BaseModel):
    success: bool
    message: str
    notified: int = 0
    failed: int = 0


class InactiveRemindersResult(BaseModel):
    success: bool
    message: str
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[str] = []


class EmergencyAlertResult(BaseModel):
    success: bool
    message: str
    notified: int = 0
    failed: int = 0
    emergency_contact_notified: bool = False
    contact_channel: Optional[str] = None


class ScanReport(BaseModel):
    success: bool = True
    message: str = ""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[str] = []


class InactivityScanResult(BaseModel):
    success: bool
    message: str
    reminders: ScanReport
    emergencies: ScanReport


class CheckInStatus(BaseModel):
    user_id: str
    last_checkin: Optional[datetime] = None
    streak: int = 0
    cadence: Cadence = Cadence.DAILY
    can_check_in: bool = True
    wait_reason: Optional[str] = None
    within_interval: bool = False


class CheckInStats(BaseModel):
    total_check_ins: int = 0
    this_week: int = 0
    this_month: int = 0
    current_streak: int = 0
    longest_streak: int = 0
