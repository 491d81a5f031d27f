import logging
from typing import Annotated
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core import schemas, models
from app.core.database import get_db
from app.core.security import (
    create_access_token,
    get_current_user,
    hash_password,
    verify_password,
)

router = APIRouter(prefix="/profile", tags=["Authentication"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


@router.post(
    "/signup",
    response_model=schemas.UserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def sign_up(user: schemas.CreateUser, db: db_dep):
    query = select(models.User).where(models.User.email == user.email)
    existing = (await db.execute(query)).scalars().first()

    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="User already exists"
        )

    try:
        new_user = models.User(
            email=user.email,
            password=hash_password(user.password),
            role=schemas.UserRole.USER.value,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        return new_user
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to add a new user: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sign up",
        )


@router.post(
    "/login", response_model=schemas.TokenResponse, status_code=status.HTTP_200_OK
)
async def login(credentials: schemas.UserLogin, db: db_dep):
    query = select(models.User).where(models.User.email == credentials.email)
    db_user = (await db.execute(query)).scalars().first()

    # Same answer for unknown email and wrong password
    if not db_user or not verify_password(credentials.password, db_user.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials"
        )

    token = create_access_token({"user_id": db_user.id, "role": db_user.role})
    return {"access_token": token, "token_type": "bearer"}


@router.get("/me", response_model=schemas.UserResponse)
async def read_profile(
    current_user: Annotated[models.User, Depends(get_current_user)],
):
    return current_user
