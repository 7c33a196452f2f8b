from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

ReviewStatus = Literal["PENDING", "APPROVED", "REJECTED", "FLAGGED", "HIDDEN"]


class ReviewCreate(BaseModel):
    product_id: int
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: str = Field(min_length=50, max_length=2000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, min_length=50, max_length=2000)
    status: Optional[ReviewStatus] = None
    moderation_note: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("rating", "comment", "status")
    @classmethod
    def not_null(cls, v):
        # May be omitted but not cleared
        if v is None:
            raise ValueError("must not be null")
        return v


class ReviewAuthorOut(BaseModel):
    id: int
    name: Optional[str]

    class Config:
        from_attributes = True


class ReviewOut(BaseModel):
    id: int
    product_id: int
    rating: int
    title: Optional[str]
    comment: str
    status: str
    verified_purchase: bool
    created_at: datetime
    updated_at: datetime
    user: ReviewAuthorOut

    class Config:
        from_attributes = True


class AdminReviewOut(ReviewOut):
    moderated_by: Optional[int]
    moderated_at: Optional[datetime]
    moderation_note: Optional[str]


class ReviewStatistics(BaseModel):
    total_reviews: int
    average_rating: float
    rating_distribution: Dict[str, int]
    percentage_by_rating: Dict[str, int]


class ProductReviewsOut(BaseModel):
    reviews: List[ReviewOut]
    statistics: ReviewStatistics
    limit: int
    offset: int
