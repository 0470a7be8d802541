"""
Activity event models for the risk monitor.

Events arrive from the activity feed as JSON (camelCase or snake_case keys)
and are decoded once, at the ingest boundary, into one variant per event type.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Supported activity event types."""
    BET_PLACED = "bet_placed"
    LOGIN = "login"
    LOCATION_CHANGE = "location_change"
    DEVICE_SWITCH = "device_switch"
    MOUSE_MOVE = "mouse_move"
    KEYSTROKE = "keystroke"
    TOUCH = "touch"
    SCROLL = "scroll"


BIOMETRIC_EVENT_TYPES = {
    EventType.MOUSE_MOVE.value,
    EventType.KEYSTROKE.value,
    EventType.TOUCH.value,
    EventType.SCROLL.value,
}


class InvalidEventError(ValueError):
    """Raised when an inbound event cannot be decoded."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class FeedModel(BaseModel):
    """Accepts both camelCase and snake_case keys from the feed."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class NetworkInfo(FeedModel):
    """Connection and browser characteristics attached to an event."""
    ip_address: str = Field(..., min_length=1)
    user_agent: str = ""
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    color_depth: Optional[int] = None
    plugins: List[str] = Field(default_factory=list)
    cookies_enabled: bool = True
    do_not_track: Optional[bool] = None
    connection_type: Optional[str] = None


class BaseEvent(FeedModel):
    """Fields shared by every activity event."""
    event_id: Optional[str] = None
    user_id: str = Field(..., min_length=1)
    timestamp: Optional[int] = Field(default=None, ge=0)  # milliseconds
    network: Optional[NetworkInfo] = None

    def with_defaults(self, event_id: str, timestamp: int) -> "BaseEvent":
        """Return a copy with a generated id and arrival timestamp where missing."""
        update: Dict[str, Any] = {}
        if not self.event_id:
            update["event_id"] = event_id
        if self.timestamp is None:
            update["timestamp"] = timestamp
        return self.model_copy(update=update) if update else self

    @property
    def is_biometric(self) -> bool:
        return getattr(self, "type") in BIOMETRIC_EVENT_TYPES


class BetPlacedEvent(BaseEvent):
    type: Literal["bet_placed"] = "bet_placed"
    amount: float = Field(..., ge=0.0)
    match_id: Optional[str] = None


class LoginEvent(BaseEvent):
    type: Literal["login"] = "login"
    login_attempts: int = Field(default=1, ge=0)


class LocationChangeEvent(BaseEvent):
    type: Literal["location_change"] = "location_change"
    previous_location: Optional[str] = None
    current_location: Optional[str] = None


class DeviceSwitchEvent(BaseEvent):
    type: Literal["device_switch"] = "device_switch"
    previous_device: Optional[str] = None
    current_device: Optional[str] = None


class MouseMoveEvent(BaseEvent):
    type: Literal["mouse_move"] = "mouse_move"
    x: float
    y: float
    pressure: float = 0.0
    button: Optional[int] = None


class KeystrokeEvent(BaseEvent):
    type: Literal["keystroke"] = "keystroke"
    key: str
    action: Literal["keydown", "keyup"] = "keydown"
    pressure: float = 0.0


class TouchEvent(BaseEvent):
    type: Literal["touch"] = "touch"
    x: float
    y: float
    phase: Literal["touchstart", "touchmove", "touchend"] = "touchstart"
    pressure: float = 0.0
    area: float = 0.0
    touch_count: int = Field(default=1, ge=1)


class ScrollEvent(BaseEvent):
    type: Literal["scroll"] = "scroll"
    delta_x: float = 0.0
    delta_y: float = 0.0


Event = Annotated[
    Union[
        BetPlacedEvent,
        LoginEvent,
        LocationChangeEvent,
        DeviceSwitchEvent,
        MouseMoveEvent,
        KeystrokeEvent,
        TouchEvent,
        ScrollEvent,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER = TypeAdapter(Event)


def decode_event(raw: Union[BaseEvent, Dict[str, Any], str, bytes]) -> BaseEvent:
    """
    Decode a raw feed record into its typed event variant.

    Args:
        raw: Event model, dict, or JSON text/bytes

    Returns:
        Typed event

    Raises:
        InvalidEventError: if required fields are missing or malformed
    """
    if isinstance(raw, BaseEvent):
        return raw
    try:
        if isinstance(raw, (str, bytes)):
            return EVENT_ADAPTER.validate_json(raw)
        if isinstance(raw, dict):
            return EVENT_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise InvalidEventError(f"Malformed event: {e.error_count()} validation error(s)", raw) from e
    raise InvalidEventError(f"Unsupported event payload type: {type(raw).__name__}", raw)
