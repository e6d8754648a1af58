from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from typing import ClassVar, List, Optional, Literal


class SequenceInstance(BaseModel):
    """A lead's live progress marker through one sequence definition."""
    trigger: str
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    index: int = 0
    completed: bool = False

    def is_finished(self, step_count: int) -> bool:
        return self.completed or self.index >= step_count


class LeadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    COLLECTION: ClassVar[str] = "leads"

    lead_id: str = Field(..., alias="_id")  # canonical routing identifier (jid)
    name: str = ""
    phone: str = ""
    source: str = "WhatsApp"
    status: str = "new"
    tags: List[str] = Field(default_factory=list)
    active_sequences: List[SequenceInstance] = Field(default_factory=list)
    unread_count: int = 0
    last_message_at: Optional[datetime] = None
    next_sequence_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # identity bookkeeping
    jid: Optional[str] = None
    resolved_jid: Optional[str] = None
    lid_jid: Optional[str] = None
    addressing_mode: Optional[str] = None
    is_lid_remote: bool = False

    # mirrored from the generation pipeline for display
    lyrics: Optional[str] = None

    @property
    def first_name(self) -> str:
        parts = (self.name or "").split()
        return parts[0] if parts else ""

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="python")

    @classmethod
    def from_document(cls, document: dict) -> "LeadModel":
        return cls.model_validate(document)


class LeadMessage(BaseModel):
    """
    One entry in a lead's message log. Written for every inbound event and for
    every outbound send the system performs.
    """
    COLLECTION: ClassVar[str] = "lead_messages"

    lead_id: str
    content: str = ""
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    sender: Literal["lead", "business", "system"] = "system"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
