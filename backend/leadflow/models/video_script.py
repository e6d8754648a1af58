from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional


class ScriptStatus(str, Enum):
    NO_SCRIPT = "no_script"
    SEND_SCRIPT = "send_script"
    SENT = "sent"
    ERROR_SCRIPT = "error_script"


SCRIPT_TRANSITIONS = {
    (ScriptStatus.NO_SCRIPT, ScriptStatus.SEND_SCRIPT),
    (ScriptStatus.NO_SCRIPT, ScriptStatus.ERROR_SCRIPT),
    (ScriptStatus.SEND_SCRIPT, ScriptStatus.SENT),
    (ScriptStatus.ERROR_SCRIPT, ScriptStatus.NO_SCRIPT),
}


class VideoScript(BaseModel):
    """One-minute ad script requested by a lead, delivered over the messaging channel."""
    model_config = ConfigDict(populate_by_name=True)

    COLLECTION: ClassVar[str] = "video_scripts"

    script_id: str = Field(..., alias="_id")
    lead_id: Optional[str] = None
    lead_phone: Optional[str] = None
    sender_name: str = ""
    status: ScriptStatus = ScriptStatus.NO_SCRIPT

    description: str = ""
    business_name: str = ""
    purpose: str = ""
    promo: Optional[str] = None

    script: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    script_generated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_document(cls, document: dict) -> "VideoScript":
        return cls.model_validate(document)
