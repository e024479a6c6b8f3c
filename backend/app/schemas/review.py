from datetime import datetime

from pydantic import BaseModel, Field


class ReviewCreateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(None, max_length=1000)


class ReviewResponse(BaseModel):
    id: int
    booking_id: int
    car_id: int
    customer_id: int
    rating: int
    comment: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
