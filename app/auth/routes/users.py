from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.auth.models.user import User
from app.auth.schemas.user import UserSummary
from app.auth.services.user_service import UserService, build_user_summary
from app.db.session import get_db

router = APIRouter()


@router.get("/me", response_model=UserSummary)
def read_current_user(current_user: User = Depends(get_current_user)) -> UserSummary:
    return build_user_summary(current_user)


@router.get("/search", response_model=list[UserSummary])
def search_users(
    q: str = Query(..., max_length=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[UserSummary]:
    service = UserService(db)
    return service.search_users(q, exclude_id=current_user.id)
