from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.models.review import Review
from app.models.user import User
from app.schemas.review import AdminReviewOut, ReviewCreate, ReviewUpdate
from app.security.deps import get_current_user, request_context
from app.services import reviews as review_service

router = APIRouter()


@router.post("", response_model=AdminReviewOut, status_code=status.HTTP_201_CREATED)
def create_review(
    payload: ReviewCreate,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Review:
    return review_service.create_review(
        db,
        user,
        payload.product_id,
        payload.rating,
        payload.title,
        payload.comment,
        request_context(request),
    )


@router.patch("/{review_id}", response_model=AdminReviewOut)
def update_review(
    review_id: int,
    payload: ReviewUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Review:
    changes = payload.model_dump(exclude_unset=True)
    return review_service.update_review(db, user, review_id, changes, request_context(request))


@router.delete("/{review_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_review(
    review_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    review_service.delete_review(db, user, review_id, request_context(request))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
