from __future__ import annotations

from enum import IntEnum

from pydantic import BaseModel, ConfigDict, Field


class ReservedCode(IntEnum):
    """Event codes produced by the engine itself, never by the worker."""

    UNKNOWN_FRAME = 3000
    CHILD_DIED = 3001


UNKNOWN_FRAME = ReservedCode.UNKNOWN_FRAME
CHILD_DIED = ReservedCode.CHILD_DIED

CHILD_DIED_PAYLOAD = "child died prematurely"


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: int = Field(description="Numeric event code")
    payload: str = Field(default="", description="Rest of the line after the code")

    @property
    def is_reserved(self) -> bool:
        return self.code in (UNKNOWN_FRAME, CHILD_DIED)

    @property
    def is_terminal(self) -> bool:
        return self.code == CHILD_DIED


def unknown_frame(raw: str) -> Event:
    """Wrap a line that does not follow the ``NNN payload`` grammar."""
    return Event(code=UNKNOWN_FRAME, payload=f"unknown response ({raw})")


def child_died() -> Event:
    return Event(code=CHILD_DIED, payload=CHILD_DIED_PAYLOAD)
