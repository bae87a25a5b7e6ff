"""
令牌服务 - 签发与校验访问令牌（JWT）

账户与登录不在本服务内；这里只负责解析调用方身份。
"""
from typing import Optional
from datetime import datetime, timedelta, timezone
import uuid

import jwt

from core.config import settings
from core.logging_config import get_logger
from domain.lending.entity import UserRole


logger = get_logger(__name__)


class TokenService:
    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        self._secret_key = secret_key or settings.SECRET_KEY
        self._algorithm = algorithm or settings.ALGORITHM

    def create_access_token(
        self,
        user_id: int,
        role: UserRole,
        expires_minutes: Optional[int] = None,
    ) -> str:
        """创建访问令牌"""
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        to_encode = {
            "sub": str(user_id),
            "role": role.value,
            "exp": expire,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, self._secret_key, algorithm=self._algorithm)

    def verify_access_token(self, token: str) -> Optional[int]:
        """校验访问令牌，返回用户ID；无效或过期返回 None"""
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            logger.info("access_token_expired")
            return None
        except jwt.InvalidTokenError as exc:
            logger.warning("access_token_invalid", error=str(exc))
            return None
        if payload.get("type") != "access":
            return None
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return None
