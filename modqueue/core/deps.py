import hmac
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from modqueue.core.config import Settings, settings
from modqueue.core.db import get_db
from modqueue.modules.auth.models import User, UserRole
from modqueue.modules.moderation.service import ModerationService
from modqueue.modules.worker.runner import JobWorker

# Tokens are minted by the platform auth service; we only verify them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login", auto_error=False)

def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", settings)

async def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id = UUID(str(payload.get("sub")))
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()

    if user is None:
        raise credentials_exception
    return user

async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user

async def get_current_staff_user(
    current_user: User = Depends(get_current_active_user)
) -> User:
    if not current_user.is_staff:
        raise HTTPException(status_code=403, detail="Admin or moderator only")
    return current_user

async def get_current_admin_user(
    current_user: User = Depends(get_current_active_user)
) -> User:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin only")
    return current_user

async def verify_cron_secret(
    authorization: str | None = Header(None),
    config: Settings = Depends(get_settings)
) -> None:
    # No secret configured means the trigger is closed, not open.
    expected = config.CRON_SECRET
    if not expected or not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not hmac.compare_digest(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")

def get_moderation_service(request: Request) -> ModerationService:
    return request.app.state.moderation_service

def get_job_worker(request: Request) -> JobWorker:
    return request.app.state.job_worker
