"""
Representative protected route.
"""
from fastapi import APIRouter, Depends

from src.core.deps import AuthenticatedSubject, get_current_subject
from src.schemas.auth import ProfileResponse

router = APIRouter(tags=["profile"])


@router.get("/profile", response_model=ProfileResponse)
def get_profile(current: AuthenticatedSubject = Depends(get_current_subject)) -> ProfileResponse:
    """
    Get the authenticated principal behind the bearer token.
    """
    return ProfileResponse(subject=current.subject, email=current.email)
