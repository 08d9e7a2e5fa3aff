from pydantic import BaseModel
from enum import Enum
from typing import Optional, Any, Dict


class ProviderStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ProviderResponse(BaseModel):
    """Standard response for all provider send operations."""
    success: bool
    status: ProviderStatus = ProviderStatus.UNKNOWN
    provider_name: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    estimated_delivery_seconds: Optional[float] = None
    provider_response: Optional[Dict[str, Any]] = None
