from pydantic import BaseModel, Field, field_validator
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, List, Optional, Union

from leadflow.core.clock import as_utc


class StepType(str, Enum):
    TEXT = "text"
    FORM = "form"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"


# Definitions authored in the CRM use the Spanish type names
_STEP_TYPE_ALIASES = {
    "texto": StepType.TEXT,
    "formulario": StepType.FORM,
    "imagen": StepType.IMAGE,
}


class SequenceStep(BaseModel):
    type: StepType = StepType.TEXT
    content: str = ""
    delay: float = 0  # minutes from sequence start

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _STEP_TYPE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("delay", mode="before")
    @classmethod
    def _coerce_delay(cls, value):
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0


class SequenceDefinition(BaseModel):
    COLLECTION: ClassVar[str] = "sequences"

    trigger: str
    messages: List[SequenceStep] = Field(default_factory=list)

    @property
    def step_count(self) -> int:
        return len(self.messages)

    def due_at(self, start_time: datetime, index: int) -> Optional[datetime]:
        """When step `index` becomes due for an instance started at `start_time`."""
        if index < 0 or index >= len(self.messages):
            return None
        return as_utc(start_time) + timedelta(minutes=self.messages[index].delay)


# ---------------------------------------------------------
# OUTBOUND MESSAGES (one constructor per step type)
# ---------------------------------------------------------

@dataclass(frozen=True)
class TextMessage:
    text: str


@dataclass(frozen=True)
class FormMessage:
    text: str


@dataclass(frozen=True)
class AudioMessage:
    url: str
    voice_note: bool = True
    mimetype: Optional[str] = None


@dataclass(frozen=True)
class ImageMessage:
    url: str
    caption: Optional[str] = None


@dataclass(frozen=True)
class VideoMessage:
    url: str
    caption: Optional[str] = None


OutboundMessage = Union[TextMessage, FormMessage, AudioMessage, ImageMessage, VideoMessage]
