"""
Chat and knowledge-search collaborator models
Field aliases follow the collaborator's camelCase wire format
"""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatContextMessage(_WireModel):
    text: str
    description: Optional[str] = None


class LocationHint(_WireModel):
    time_zone: str = Field(default="UTC", alias="timeZone")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country_or_region: Optional[str] = Field(None, alias="countryOrRegion")


class ChatRequest(_WireModel):
    """One chat turn: the prompt plus optional grounding context"""
    text: str
    additional_context: List[ChatContextMessage] = Field(default_factory=list, alias="additionalContext")
    location_hint: LocationHint = Field(default_factory=LocationHint, alias="locationHint")

    def to_wire(self) -> dict:
        return {
            "message": {"text": self.text},
            "additionalContext": [c.model_dump(exclude_none=True) for c in self.additional_context] or None,
            "locationHint": self.location_hint.model_dump(by_alias=True, exclude_none=True),
        }


class Attribution(_WireModel):
    attribution_type: Optional[str] = Field(None, alias="attributionType")
    provider_display_name: Optional[str] = Field(None, alias="providerDisplayName")
    attribution_source: Optional[str] = Field(None, alias="attributionSource")
    see_more_web_url: Optional[str] = Field(None, alias="seeMoreWebUrl")


class ChatMessage(_WireModel):
    id: Optional[str] = None
    text: str = ""
    created_date_time: Optional[datetime] = Field(None, alias="createdDateTime")
    attributions: List[Attribution] = Field(default_factory=list)


class ChatConversation(_WireModel):
    id: str
    created_date_time: Optional[datetime] = Field(None, alias="createdDateTime")
    display_name: Optional[str] = Field(None, alias="displayName")
    state: Optional[str] = None
    turn_count: int = Field(default=0, alias="turnCount")
    messages: List[ChatMessage] = Field(default_factory=list)

    @property
    def reply_text(self) -> str:
        """Text of the last message, which is the collaborator's answer"""
        return self.messages[-1].text if self.messages else ""


class SearchHit(_WireModel):
    hit_id: str = Field(..., alias="hitId")
    rank: int = 0
    summary: Optional[str] = None
    resource: Optional[Any] = None
