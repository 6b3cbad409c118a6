"""
API Schemas: Request/Response Models

Request bodies accept the camelCase field names clients send (`olderThan`,
`transactionId`) as well as snake_case. Required business fields of the
analysis endpoints are Optional here so that a missing `text` or `host` is
reported by the orchestrator as a 400 with a readable message.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeRequest(RequestModel):
    """Command: analyze one text."""

    text: Optional[str] = Field(None, description="Text to analyze")
    host: Optional[str] = Field(None, description="Billed host identifier")
    model: Optional[str] = Field(None, description="Upstream model id (default model if omitted)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"text": "I love this product!", "host": "example.com"}
        }
    )


class BatchAnalyzeRequest(RequestModel):
    """Command: analyze up to the batch limit of texts concurrently."""

    texts: Optional[List[str]] = Field(None, description="Texts to analyze")
    host: Optional[str] = None
    model: Optional[str] = None


class AddCreditsRequest(RequestModel):
    host: str = Field(..., min_length=1)
    amount: float
    description: str = Field("Credit addition", max_length=500)
    reference: Optional[str] = Field(None, max_length=255)


class HostStatusRequest(RequestModel):
    host: str = Field(..., min_length=1)
    active: bool
    notes: Optional[str] = Field(None, max_length=1000)


class RefundRequest(RequestModel):
    transaction_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class AnalyticsCleanupRequest(RequestModel):
    host: str = Field(..., min_length=1)
    older_than: int = Field(30, ge=0, le=3650, description="Days of data to keep")


class HealthCheckResponse(BaseModel):
    """Query result: service and dependency health."""

    status: str
    timestamp: datetime
    version: str
    dependencies: Dict[str, str]
