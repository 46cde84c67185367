"""
FastAPI dependencies for the Popup Engine
"""
from typing import Generator, Optional
from fastapi import Depends, HTTPException, Header, status
from sqlalchemy.orm import Session
from popup_engine.db.database import SessionLocal
from popup_engine.config import settings
from popup_engine.schemas.common import Role
from popup_engine.services.cache_service import Cache, CodeStore, cache, code_store

ROLES = ("leader", "brand", "platform")


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_cache() -> Cache:
    return cache


def get_code_store() -> CodeStore:
    return code_store


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key


async def get_actor_role(x_actor_role: Optional[str] = Header(None)) -> Role:
    """Role of the caller acting on a pipeline"""
    if x_actor_role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Actor-Role must be one of {', '.join(ROLES)}"
        )
    return x_actor_role


async def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_actor_id
