"""
Event contracts for the parking pipeline.

This module defines the domain events that cross service boundaries.
Events represent facts about things that have already happened at a parking
spot or at the cashier.

Design decisions:
- Events are immutable (frozen pydantic models); a correction is a new event
- Every event carries an ``event_id`` (the deduplication key every consumer
  must honour) and an ``occurred_at`` UTC timestamp
- Field aliases follow the wire names used by the other services on the
  broker, so JSON produced here is readable there and vice versa: numeric ids
  are accepted as strings, durations travel as ``hh:mm:ss`` and money as a
  JSON number
- Events carry everything subscribers need (duration and amount travel in
  ``SpotFreed``; consumers do not recompute them)

The routing key of an event is its ``EVENT_TYPE``; the catalogue below is what
the bus uses to turn a routing key plus a body back into a typed event.
"""

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, ClassVar, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from pipeline.exceptions import MalformedEventError, UnknownEventTypeError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Event Type Constants
# =============================================================================

class EventTypes:
    """
    Logical event names.

    These double as routing keys on the topic exchange and as the prefix of
    every queue name.
    """
    SPOT_OCCUPIED = "EventoVagaOcupada"
    SPOT_FREED = "EventoVagaLiberada"
    PAYMENT_PROCESSED = "EventoPagamentoProcessado"


# =============================================================================
# Base Contract
# =============================================================================

class DomainEvent(BaseModel):
    """
    Base class for all integration events.

    Attributes:
        event_id: Unique per logical occurrence; used as the message id on the
            broker and as the idempotency key by every consumer
        occurred_at: When the fact happened (UTC). Useful for ordering
            heuristics, not a delivery-order guarantee
    """
    EVENT_TYPE: ClassVar[str] = ""

    model_config = ConfigDict(frozen=True, populate_by_name=True, coerce_numbers_to_str=True)

    event_id: UUID = Field(default_factory=uuid4, alias="EventoId")
    occurred_at: datetime = Field(default_factory=utcnow, alias="OcorreuEm")

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def event_type(self) -> str:
        return self.EVENT_TYPE

    def __str__(self) -> str:
        return f"{self.EVENT_TYPE}(id={str(self.event_id)[:8]})"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# [-][d.]hh:mm:ss[.fffffff], the constant format .NET writes for a TimeSpan
_TIMESPAN_RE = re.compile(
    r"^(?P<sign>-)?(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{2}):(?P<seconds>\d{2})"
    r"(?:\.(?P<fraction>\d{1,7}))?$"
)


def parse_timespan(value: Any) -> Any:
    """
    Parse a ``d.hh:mm:ss.fffffff`` duration string into a timedelta.

    Anything else is returned unchanged for the regular timedelta validation
    (ISO-8601 strings, seconds as numbers).
    """
    if not isinstance(value, str):
        return value
    match = _TIMESPAN_RE.match(value.strip())
    if match is None:
        return value
    fraction = match.group("fraction") or "0"
    result = timedelta(
        days=int(match.group("days") or 0),
        hours=int(match.group("hours")),
        minutes=int(match.group("minutes")),
        seconds=int(match.group("seconds")),
        microseconds=round(int(fraction.ljust(7, "0")) / 10),
    )
    return -result if match.group("sign") else result


def format_timespan(value: timedelta) -> str:
    """Format a timedelta as ``[-][d.]hh:mm:ss[.fffffff]``."""
    sign = "-" if value < timedelta(0) else ""
    value = abs(value)
    hours, remainder = divmod(value.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    text = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    if value.days:
        text = f"{value.days}.{text}"
    if value.microseconds:
        text = f"{text}.{value.microseconds * 10:07d}"
    return sign + text


def money_to_json(value: Decimal) -> float | int:
    """Money travels as a JSON number, not a string."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# =============================================================================
# Occupancy Events
# =============================================================================

class SpotOccupied(DomainEvent):
    """Published by the occupancy owner when a customer parks in a spot."""
    EVENT_TYPE: ClassVar[str] = EventTypes.SPOT_OCCUPIED

    spot_id: str = Field(..., alias="VagaId")
    spot_code: str = Field(..., alias="CodigoVaga")
    customer_id: str = Field(..., alias="ClienteId")
    customer_name: str = Field(..., alias="ClienteNome")
    entry_time: datetime = Field(..., alias="DataEntrada")

    @field_validator("entry_time")
    @classmethod
    def _entry_time_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SpotFreed(DomainEvent):
    """
    Published by the occupancy owner when a customer leaves a spot.

    ``occupied_duration`` and ``amount_charged`` are computed upstream and
    carried as-is; billing and analytics trust them.
    """
    EVENT_TYPE: ClassVar[str] = EventTypes.SPOT_FREED

    spot_id: str = Field(..., alias="VagaId")
    spot_code: str = Field(..., alias="CodigoVaga")
    customer_id: str = Field(..., alias="ClienteId")
    exit_time: datetime = Field(..., alias="DataSaida")
    occupied_duration: timedelta = Field(..., alias="TempoOcupacao")
    amount_charged: Decimal = Field(..., ge=0, alias="ValorCobrado")

    @field_validator("exit_time")
    @classmethod
    def _exit_time_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("occupied_duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        return parse_timespan(value)

    @field_serializer("occupied_duration", when_used="json")
    def _serialize_duration(self, value: timedelta) -> str:
        return format_timespan(value)

    @field_serializer("amount_charged", when_used="json")
    def _serialize_amount(self, value: Decimal) -> float | int:
        return money_to_json(value)

    @field_validator("occupied_duration")
    @classmethod
    def _duration_not_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("occupied duration cannot be negative")
        return value

    @property
    def entry_time(self) -> datetime:
        """Entry time implied by the carried exit time and duration."""
        return self.exit_time - self.occupied_duration


# =============================================================================
# Payment Events
# =============================================================================

class PaymentProcessed(DomainEvent):
    """Published by billing once a payment for an invoice has been approved."""
    EVENT_TYPE: ClassVar[str] = EventTypes.PAYMENT_PROCESSED

    transaction_id: UUID = Field(default_factory=uuid4, alias="TransacaoId")
    customer_id: str = Field(..., alias="ClienteId")
    amount: Decimal = Field(..., ge=0, alias="Valor")
    payment_method: str = Field(..., alias="MetodoPagamento")
    status: str = Field(..., alias="Status")
    authorization_code: Optional[str] = Field(default=None, alias="CodigoAutorizacao")

    @field_serializer("amount", when_used="json")
    def _serialize_amount(self, value: Decimal) -> float | int:
        return money_to_json(value)


# =============================================================================
# Wire Codec
# =============================================================================

EVENT_CATALOGUE: dict[str, type[DomainEvent]] = {
    cls.EVENT_TYPE: cls for cls in (SpotOccupied, SpotFreed, PaymentProcessed)
}


def to_wire(event: DomainEvent) -> bytes:
    """Serialize an event to its JSON wire form (UTF-8)."""
    return event.model_dump_json(by_alias=True).encode("utf-8")


def from_wire(event_type: str, body: bytes) -> DomainEvent:
    """
    Decode a message body into the event contract named by ``event_type``.

    Raises:
        UnknownEventTypeError: If ``event_type`` is not in the catalogue
        MalformedEventError: If the body does not match the contract
    """
    event_cls = EVENT_CATALOGUE.get(event_type)
    if event_cls is None:
        raise UnknownEventTypeError(event_type)
    try:
        return event_cls.model_validate_json(body)
    except ValidationError as e:
        raise MalformedEventError(event_type, str(e)) from e
