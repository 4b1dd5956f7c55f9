"""
Pydantic Models for API Requests
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NudgeCreate(BaseModel):
    """Request model for creating a nudge."""
    type: str = Field(..., description="Nudge type, e.g. emergency-buffer or spending-alert")
    message: str = Field(..., min_length=1, description="Message shown to the user")
    reason: str = Field(..., min_length=1, description="Why the nudge was raised")
    expires_at: datetime = Field(..., description="Expiry timestamp")
    amount: Optional[float] = Field(None, ge=0, description="Amount the nudge acts on")
    priority: Optional[int] = Field(None, ge=0, le=10, description="Priority 0-10")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Extra nudge data")


class FeedbackCreate(BaseModel):
    """Request model for nudge feedback."""
    rating: Optional[int] = Field(None, ge=1, le=5, description="Rating 1-5")
    was_helpful: Optional[bool] = Field(None, description="Whether the nudge helped")
    comment: Optional[str] = Field(None, description="Free-text comment")
    dismiss_reason: Optional[str] = Field(None, description="Why the nudge was dismissed")


class AutoNudgeUpdate(BaseModel):
    """Request model for turning auto-accept on or off."""
    enabled: bool = Field(..., description="New auto-nudge setting")


class WhatIfScenario(BaseModel):
    """One hypothetical change to simulate."""
    type: str = Field(..., pattern=r'^(spending|saving|income)$', description="spending, saving or income")
    amount: float = Field(..., gt=0, description="Scenario amount")
    name: Optional[str] = Field(None, description="Label for the comparison table")
    category: Optional[str] = Field(None, description="Spending category")


class WhatIfRequest(BaseModel):
    """Request model for a what-if comparison."""
    scenarios: List[WhatIfScenario] = Field(..., min_length=1, max_length=10)


class HealthResponse(BaseModel):
    status: str
