"""
Auth Service: Password hashing, JWT creation/verification, login.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select

from app.models import User, UserRole
from app.config import get_settings
from app.utils import utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, email: str, role: str) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def authenticate(db: AsyncSession, email: str, password: str) -> Optional[User]:
    """Return the active user for these credentials, stamping last_login_at, else None."""
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        logger.info(f"Failed login for {email}")
        return None
    user.last_login_at = utcnow()
    return user


async def bootstrap_first_admin(
    db: AsyncSession,
    email: str,
    password: str,
    name: str = "Admin",
) -> Optional[User]:
    """
    Create the first admin when the users table is empty. Returns the new
    admin, or None when users already exist. Flushes; the caller commits.
    """
    count = (await db.execute(select(func.count()).select_from(User))).scalar() or 0
    if count > 0:
        return None
    admin = User(
        email=email.strip().lower(),
        password_hash=hash_password(password),
        name=name,
        role=UserRole.ADMIN.value,
        is_active=True,
    )
    db.add(admin)
    await db.flush()
    logger.info(f"Bootstrap: created first admin user {admin.email}")
    return admin
