from fastapi import APIRouter, Depends, Request, status, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional
from jose import jwt, JWTError
import bcrypt
import os
import uuid

from mailassist.database import get_db
from mailassist.model.user import User, DEFAULT_SETTINGS
from mailassist.model.session import UserSession
from mailassist.model.email import Email
from mailassist.model.email_account import EmailAccount
from mailassist.schemas.auth import RegisterRequest, LoginRequest, ProfileUpdate, SettingsUpdate, UserResponse, MAX_PASSWORD_BYTES
from mailassist.service.budget_service import get_current_budget, get_or_create_budget, percent_used, DEFAULT_MONTHLY_BUDGET_CENTS
from mailassist.utils.encryption import hash_token
from mailassist.utils.helpers import client_ip
from mailassist.utils.response import success, bad_request, unauthorized, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("auth")

router = APIRouter()

# JWT配置 - 从环境变量读取
SECRET_KEY = os.getenv("SECRET_KEY", "your-super-secret-key-change-this-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(7 * 24 * 60)))  # 默认7天

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if len(plain_password.encode('utf-8')) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def open_session(db: Session, user: User, request: Request) -> str:
    """签发令牌并登记会话（调用方负责提交）"""
    expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    token = create_access_token({"sub": str(user.id), "email": user.email, "jti": uuid.uuid4().hex}, expires_delta)
    db.add(UserSession(
        user_id=user.id,
        token_hash=hash_token(token),
        expires_at=datetime.utcnow() + expires_delta,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    ))
    return token


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    def credentials_exception(detail: str):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not token:
        raise credentials_exception("未提供令牌")

    payload = decode_access_token(token)
    if not payload or payload.get("sub") is None:
        raise credentials_exception("令牌无效或已过期")

    session = db.query(UserSession).filter(UserSession.token_hash == hash_token(token)).first()
    if not session or session.expires_at < datetime.utcnow():
        raise credentials_exception("会话已失效，请重新登录")

    user = db.query(User).filter(User.id == int(payload["sub"])).first()
    if user is None:
        raise credentials_exception("用户不存在")
    if not user.is_active:
        raise credentials_exception("账号已被禁用")

    session.last_activity = datetime.utcnow()
    db.commit()
    return user


@router.post("/register")
async def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    try:
        if db.query(User).filter(User.email == payload.email).first():
            return bad_request("该邮箱已注册")

        user = User(
            email=payload.email,
            password_hash=get_password_hash(payload.password),
            full_name=payload.full_name,
            settings=dict(DEFAULT_SETTINGS),
        )
        db.add(user)
        db.flush()

        get_or_create_budget(db, user.id)
        token = open_session(db, user, request)
        db.commit()
        db.refresh(user)

        logger.info(f"新用户注册: {user.email}")
        return success({
            "user": UserResponse.model_validate(user),
            "token": token,
        }, msg="注册成功", status_code=201)
    except Exception as e:
        db.rollback()
        logger.error(f"注册失败: {e}", exc_info=True)
        return server_error("注册失败")


@router.post("/login")
async def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    try:
        user = db.query(User).filter(User.email == payload.email).first()
        if not user or not verify_password(payload.password, user.password_hash):
            return unauthorized("邮箱或密码错误")

        if not user.is_active:
            return unauthorized("账号已被禁用")

        token = open_session(db, user, request)
        user.last_login = datetime.utcnow()
        db.commit()

        return success({
            "user": {"id": user.id, "email": user.email, "full_name": user.full_name},
            "token": token,
        }, msg="登录成功")
    except Exception as e:
        db.rollback()
        logger.error(f"登录失败: {e}", exc_info=True)
        return server_error("登录失败")


@router.post("/logout")
async def logout(
    token: Optional[str] = Depends(oauth2_scheme),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        db.query(UserSession).filter(
            UserSession.token_hash == hash_token(token),
            UserSession.user_id == current_user.id
        ).delete(synchronize_session=False)
        db.commit()
        return success(msg="已成功退出登录")
    except Exception as e:
        db.rollback()
        logger.error(f"退出登录失败: {e}", exc_info=True)
        return server_error("退出登录失败")


@router.get("/me")
async def read_users_me(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        accounts_count = db.query(EmailAccount).filter(
            EmailAccount.user_id == current_user.id,
            EmailAccount.is_active == True
        ).count()
        unread_count = db.query(Email).filter(
            Email.user_id == current_user.id,
            Email.is_read == False,
            Email.is_deleted == False
        ).count()

        budget = get_current_budget(db, current_user.id)
        return success({
            "user": {
                "id": current_user.id,
                "email": current_user.email,
                "full_name": current_user.full_name,
                "settings": current_user.settings,
            },
            "stats": {
                "emailAccountsCount": accounts_count,
                "unreadCount": unread_count,
            },
            "budget": {
                "apiCalls": budget.api_calls_total if budget else 0,
                "estimatedCost": budget.estimated_cost_cents if budget else 0,
                "budgetLimit": budget.budget_limit_cents if budget else DEFAULT_MONTHLY_BUDGET_CENTS,
                "isPaused": budget.is_paused if budget else False,
                "percentUsed": percent_used(budget),
            },
        })
    except Exception as e:
        logger.error(f"获取用户信息失败: {e}", exc_info=True)
        return server_error("获取用户信息失败")


@router.patch("/profile")
async def update_profile(
    payload: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        current_user.full_name = payload.full_name
        db.commit()
        db.refresh(current_user)
        return success(UserResponse.model_validate(current_user), msg="个人资料已更新")
    except Exception as e:
        db.rollback()
        logger.error(f"更新个人资料失败: {e}", exc_info=True)
        return server_error("更新个人资料失败")


@router.get("/settings")
async def get_settings(current_user: User = Depends(get_current_user)):
    return success(current_user.settings or {})


@router.patch("/settings")
async def update_settings(
    payload: SettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        # JSON列需要整体赋值新对象才会被标记为已修改
        current_user.settings = {**(current_user.settings or {}), **payload.settings}
        db.commit()
        db.refresh(current_user)
        return success(UserResponse.model_validate(current_user), msg="设置已更新")
    except Exception as e:
        db.rollback()
        logger.error(f"更新设置失败: {e}", exc_info=True)
        return server_error("更新设置失败")
