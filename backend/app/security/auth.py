"""
认证与授权模块
JWT 中携带调用方身份：sub（用户ID）、hotel_id、role
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import List, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from app.config import settings

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_STAFF = "staff"
ROLE_CHANNEL_MANAGER = "channel_manager"

security = HTTPBearer()


@dataclass
class Caller:
    """已认证的调用方"""
    user_id: str
    hotel_id: str
    role: str

    def can_access_hotel(self, hotel_id: str) -> bool:
        return self.role == ROLE_ADMIN or self.hotel_id == hotel_id


def create_access_token(user_id: str, hotel_id: str, role: str,
                        expires_minutes: Optional[int] = None) -> str:
    """创建 JWT token"""
    minutes = expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(UTC) + timedelta(minutes=minutes)
    to_encode = {
        "sub": str(user_id),
        "hotel_id": str(hotel_id),
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """解码 JWT token"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证"
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Caller:
    """获取当前调用方"""
    payload = decode_token(credentials.credentials)

    user_id = payload.get("sub")
    hotel_id = payload.get("hotel_id")
    role = payload.get("role")
    if not user_id or not hotel_id or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="认证凭证缺少必要信息"
        )
    return Caller(user_id=str(user_id), hotel_id=str(hotel_id), role=str(role))


def require_role(allowed_roles: List[str]):
    """角色权限验证"""
    async def role_checker(current_user: Caller = Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            logger.warning(f"Role {current_user.role} denied, requires one of {allowed_roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="权限不足"
            )
        return current_user
    return role_checker


# 便捷的角色检查器
require_manager = require_role([ROLE_ADMIN, ROLE_MANAGER])
require_webhook_caller = require_role([ROLE_ADMIN, ROLE_MANAGER, ROLE_CHANNEL_MANAGER])


def ensure_hotel_access(caller: Caller, hotel_id: str) -> None:
    """调用方只能操作自己酒店的数据"""
    if not caller.can_access_hotel(hotel_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="无权访问该酒店数据"
        )
