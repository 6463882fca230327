import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import authenticate_user, create_access_token
from ..database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


class TokenRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str
    user_id: int


@router.post("/token", response_model=TokenResponse)
async def login_for_access_token(data: TokenRequest, db: Session = Depends(get_db)):
    """Exchange email and password for a bearer token"""
    user = authenticate_user(db, data.email, data.password)
    if not user:
        logger.warning(f"🚫 Failed login attempt for {data.email}")
        raise HTTPException(status_code=401, detail="Invalid email or password")

    logger.info(f"🔐 User {user.id} signed in")
    return TokenResponse(access_token=create_access_token(user), role=user.role, user_id=user.id)
