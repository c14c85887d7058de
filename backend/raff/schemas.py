"""Pydantic schemas for request/response payloads."""

from typing import Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the sending platform.

    Any 2xx stops platform retries, so "nothing to do" outcomes
    (organic order, unhandled event, duplicate) are all success=True.
    """

    success: bool = Field(description="Whether the delivery was accepted", example=True)
    message: str = Field(description="What the engine did with the event", example="Commission created")
    duplicate: Optional[bool] = Field(
        default=None,
        description="Set when this delivery was already handled",
        example=None,
    )
    commission: Optional[float] = Field(
        default=None,
        description="Commission amount after this event",
        example=10.0,
    )
    status: Optional[str] = Field(
        default=None,
        description="Commission status after this event",
        example="APPROVED",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Commission updated",
                "commission": 10.0,
                "status": "APPROVED",
            }
        }
    }


class WebhookErrorResponse(BaseModel):
    """Body returned with 4xx/5xx responses."""

    success: bool = Field(default=False, example=False)
    error: str = Field(description="Reason the delivery was rejected", example="Invalid signature")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        example="ok"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }
