"""
gateway.py — Request / response bodies for the key-gated service routes.

ResearchRequest  — POST /api/v1/research  (ANALYSIS keys)
ChatbotRequest   — POST /api/v1/chatbot   (CHAT keys)
UsageInfo        — quota metadata echoed back to API clients
GatewayResponse  — envelope returned by both routes
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ResearchRequest(BaseModel):
    repo_url: str = Field(max_length=500, pattern=r"^https?://(www\.)?github\.com/[^/\s]+/[^/\s]+")
    options: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=2000)


class ChatbotRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    repo_url: Optional[str] = None
    repo_context: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[ChatMessage] = Field(default_factory=list)


class UsageInfo(BaseModel):
    tier: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None


class GatewayResponse(BaseModel):
    success: bool = True
    request_id: str
    data: dict[str, Any]
    usage: UsageInfo
