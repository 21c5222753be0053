"""
Pydantic schemas for API request/response validation
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


# AI Chat Schemas
class ChatRequest(BaseModel):
    """Chat message from the dashboard; extra fields are ignored"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_message: Any = Field(default="", alias="userMessage")
    history: Any = Field(default=None, description="Prior {role, content} turns, oldest first")


class MapAction(BaseModel):
    """Presentation hint for the map"""
    kind: str = Field(default="centerOn", description="centerOn")
    place: Optional[str] = None
    country: Optional[str] = None


class ChatReply(BaseModel):
    """Response from AI chat endpoint"""
    reply: str
    action: Optional[MapAction] = None


class ErrorResponse(BaseModel):
    """Input validation failure"""
    error: str
    reply: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    ai: dict
