from pydantic import BaseModel, Field
from typing import Dict, Optional

class DeployRequest(BaseModel):
    instances: Optional[int] = Field(None, ge=1, le=10)
    env_vars: Dict[str, str] = Field(default_factory=dict)
    image: Optional[str] = None

class ScaleRequest(BaseModel):
    instances: int = Field(..., ge=1, le=20)
