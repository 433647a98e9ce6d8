# /dmfy/models/api.py

from typing import Any, Dict, Optional
from pydantic import BaseModel

# Response bodies for the flow-builder API. The dashboard reads the "ok"
# flag, so these keep the shape it already expects.

class PublishResponse(BaseModel):
    ok: bool = True
    tenant_key: Optional[str] = None


class FlowResponse(BaseModel):
    ok: bool = True
    flow: Dict[str, Any]


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    field: Optional[str] = None
