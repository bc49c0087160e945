"""User router (API endpoints)."""

from fastapi import APIRouter, Depends

from src.features.auth.dependencies import get_current_active_user

from .models import User
from .schemas import UserResponse

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_active_user)):
    """Get current user information."""
    return UserResponse.model_validate(current_user)
