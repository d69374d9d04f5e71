"""Generation trace schemas."""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional


class GenerationTraceResponse(BaseModel):
    """One regeneration run, for the admin trace view."""
    id: int
    job_id: str
    step_id: int
    stage: str
    phase: str = ""
    item_key: Optional[str] = None
    status: str
    strategy_used: Optional[str] = None
    attempts: int
    models_used: List[str] = []
    issues: List[Dict[str, Any]] = []
    prompt_text: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
