import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from datetime import datetime, timedelta
from jose import jwt, JWTError

from mailassist.controller.auth import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from mailassist.database import SessionLocal
from mailassist.model.session import UserSession
from mailassist.utils.encryption import hash_token
from mailassist.utils.logger import get_logger

logger = get_logger("jwt_middleware")


class JWTRefreshMiddleware(BaseHTTPMiddleware):
    """JWT自动续期中间件

    令牌剩余有效期不足总有效期的一半时签发新令牌，通过 X-New-Token 响应头返回，
    并把原会话记录改绑到新令牌上
    """

    REFRESH_THRESHOLD = 0.5

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        if response.status_code != 200:
            return response

        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            return response

        token = auth_header.split(' ', 1)[1]
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.debug(f"JWT解码失败: {str(e)}")
            return response

        exp = payload.get('exp')
        if not exp:
            return response

        now = datetime.utcnow()
        remaining_time = (datetime.utcfromtimestamp(exp) - now).total_seconds()
        threshold_time = ACCESS_TOKEN_EXPIRE_MINUTES * 60 * self.REFRESH_THRESHOLD
        if not 0 < remaining_time < threshold_time:
            return response

        db = SessionLocal()
        try:
            session = db.query(UserSession).filter(UserSession.token_hash == hash_token(token)).first()
            if not session:
                return response

            new_expire = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
            new_token = jwt.encode({
                "sub": payload.get("sub"),
                "email": payload.get("email"),
                "jti": uuid.uuid4().hex,
                "exp": new_expire,
            }, SECRET_KEY, algorithm=ALGORITHM)

            session.token_hash = hash_token(new_token)
            session.expires_at = new_expire
            db.commit()

            response.headers['X-New-Token'] = new_token
            logger.info(f"Token自动续期: 用户={payload.get('sub')}, 剩余时间={remaining_time / 3600:.2f}小时")
        except Exception as e:
            db.rollback()
            logger.error(f"JWT续期中间件错误: {str(e)}", exc_info=True)
        finally:
            db.close()

        return response
