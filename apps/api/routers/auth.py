"""Session-scoped user endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import get_account_balance

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    balance: int = 0
    available_balance: int = 0
    session_expires_at: Optional[datetime] = None


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current user profile with credit balance."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    account = await get_account_balance(db, user.id)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        balance=int(account.balance) if account else 0,
        available_balance=account.available_balance if account else 0,
        session_expires_at=auth.expires_at,
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
