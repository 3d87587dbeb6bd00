"""
Data models for recurring message schedules.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List


class Frequency(str, Enum):
    """Recurrence cadence of a schedule"""
    HOURLY = "Hourly"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    CUSTOM = "Custom"


class PeriodUnit(str, Enum):
    """Unit of a custom recurrence period"""
    HOURS = "Hours"
    DAYS = "Days"


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC"""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class MessagePayload:
    """What to send when a schedule fires"""
    recipient: str  # phone number or transport address
    message: str = ""  # static text, also the fallback for generated content
    contact_name: str = ""
    ai_generated: bool = False
    message_type: str = "friendly"  # friendly, professional, funny, romantic
    message_context: str = ""  # free-text prompt context for generated content

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> 'MessagePayload':
        data = json.loads(raw) if raw else {}
        return cls(
            recipient=data.get('recipient', ''),
            message=data.get('message', ''),
            contact_name=data.get('contact_name', ''),
            ai_generated=bool(data.get('ai_generated', False)),
            message_type=data.get('message_type', 'friendly'),
            message_context=data.get('message_context', '')
        )


@dataclass
class RecurrenceDefinition:
    """
    A schedulable unit: send ``payload`` at ``target_hour:target_minute``.

    ``anchor_timestamp`` is the fixed reference instant (creation time or an
    explicit start date). Its calendar date combined with the target time of
    day is where every occurrence is counted from, so late firings never
    shift future ones.
    """
    target_hour: int
    target_minute: int
    payload: MessagePayload
    frequency: Frequency = Frequency.DAILY
    is_recurring: bool = False
    custom_period: int = 1
    custom_unit: PeriodUnit = PeriodUnit.DAYS
    is_enabled: bool = True
    anchor_timestamp: datetime = field(default_factory=utc_now)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        # Accept raw strings from the CLI and storage layer
        if not isinstance(self.frequency, Frequency):
            self.frequency = Frequency(self.frequency)
        if not isinstance(self.custom_unit, PeriodUnit):
            self.custom_unit = PeriodUnit(self.custom_unit)
        if self.anchor_timestamp.tzinfo is None:
            self.anchor_timestamp = self.anchor_timestamp.replace(tzinfo=timezone.utc)

    @property
    def period(self) -> int:
        """Custom period, never below one"""
        return max(1, self.custom_period)

    @property
    def is_hour_based(self) -> bool:
        """True when the cadence steps in hours rather than calendar days"""
        return (
            self.frequency == Frequency.HOURLY
            or (self.frequency == Frequency.CUSTOM and self.custom_unit == PeriodUnit.HOURS)
        )

    def formatted_time(self) -> str:
        """Target time in 12-hour format, e.g. '9:05 AM'"""
        hour = self.target_hour % 12 or 12
        suffix = "AM" if self.target_hour < 12 else "PM"
        return f"{hour}:{self.target_minute:02d} {suffix}"

    def describe_cadence(self) -> str:
        if not self.is_recurring:
            return "once"
        if self.frequency == Frequency.CUSTOM:
            return f"every {self.period} {self.custom_unit.value.lower()}"
        return self.frequency.value.lower()

    def validate(self) -> List[str]:
        """
        Validate the definition.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if not 0 <= self.target_hour <= 23:
            errors.append(f"target_hour must be 0-23, got {self.target_hour}")
        if not 0 <= self.target_minute <= 59:
            errors.append(f"target_minute must be 0-59, got {self.target_minute}")
        if not self.payload.recipient or not self.payload.recipient.strip():
            errors.append("payload recipient cannot be empty")
        return errors

    @classmethod
    def from_row(cls, row: tuple) -> 'RecurrenceDefinition':
        """Create from database row"""
        return cls(
            id=row[0],
            target_hour=row[1],
            target_minute=row[2],
            anchor_timestamp=parse_timestamp(row[3]),
            is_recurring=bool(row[4]),
            frequency=Frequency(row[5]),
            custom_period=row[6],
            custom_unit=PeriodUnit(row[7]),
            is_enabled=bool(row[8]),
            payload=MessagePayload.from_json(row[9]),
            created_at=parse_timestamp(row[10]),
            updated_at=parse_timestamp(row[11])
        )
