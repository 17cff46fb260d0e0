from pydantic import BaseModel, Field
from typing import Dict, Optional

class IntentResult(BaseModel):
    intent: str = "unknown"
    parameters: Dict[str, str] = Field(default_factory=dict)
    confidence: float = 0.0
    source: str = "rules"
    fulfillment_text: Optional[str] = None
