# moderation_gateway/schemas.py
"""Data schemas (Pydantic models) for the API."""
from pydantic import BaseModel, ConfigDict
from typing import List, Optional

class AnalyzeRequest(BaseModel):
    """Request model for a batch of messages to moderate."""
    messages: List[str]

class RiskScores(BaseModel):
    """Per-dimension risk, each 0.0 or 1.0. Unknown dimensions are kept."""
    model_config = ConfigDict(extra="allow")

    threat_of_harm: float = 0.0
    commercial_solicitation: float = 0.0

class AnalysisResult(BaseModel):
    """Moderation result for one message."""
    content: str
    scores: RiskScores
    is_safe: bool

class AnalysisFailure(BaseModel):
    """A message the backend could not judge."""
    content: str
    reason: str

class AnalysisOutcome(BaseModel):
    """Exactly one of ``ok`` or ``error`` is set."""
    ok: Optional[AnalysisResult] = None
    error: Optional[AnalysisFailure] = None
