from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
import uvicorn
import os

from mailassist.database import engine, Base
# 导入所有模型以确保 SQLAlchemy 能识别它们
from mailassist import model  # noqa: F401
from mailassist.controller import (
    auth, email_accounts, emails, drafts, analytics, notifications, rules, templates, budget,
)
from mailassist.utils.response import success, fail
from mailassist.utils.logger import get_logger
from mailassist.utils.jwt_middleware import JWTRefreshMiddleware
from mailassist.utils.rate_limit import RateLimitMiddleware, RateLimiter

# 初始化日志
logger = get_logger("main")

APP_NAME = os.getenv("APP_NAME", "邮件助手")
APP_URL = os.getenv("APP_URL", "*")

# 创建数据库表
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=APP_NAME,
    description="智能邮件助手服务API",
    version="1.0.0",
)

rate_limiter = RateLimiter()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    处理请求参数验证错误，返回统一格式
    """
    errors = exc.errors()
    if errors:
        msg = str(errors[0].get("msg", "验证失败"))
        # 自定义校验器抛出的 ValueError 带有固定前缀
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        error_msg = msg
    else:
        error_msg = "请求参数验证失败"
    logger.warning(f"请求验证失败: {request.method} {request.url.path} {error_msg}")
    return fail(msg=error_msg, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    messages = {404: "接口不存在", 405: "请求方法不允许"}
    detail = exc.detail if isinstance(exc.detail, str) else None
    if exc.status_code in messages and detail in ("Not Found", "Method Not Allowed"):
        detail = messages[exc.status_code]
    response = fail(msg=detail or "请求失败", status_code=exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


# 全局异常处理器
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    # 不向客户端暴露堆栈等内部信息
    logger.error(f"全局异常: {exc}", exc_info=True)
    return fail(msg="服务器内部错误", status_code=500)


# 添加JWT自动续期中间件
app.add_middleware(JWTRefreshMiddleware)
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)

# CORS放在最外层，限流等提前返回的响应同样带上跨域头
app.add_middleware(
    CORSMiddleware,
    allow_origins=[APP_URL] if APP_URL != "*" else ["*"],
    allow_credentials=APP_URL != "*",
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-New-Token", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

# 注册路由（账户路由需在邮件路由之前，避免被 /{email_id} 抢先匹配）
app.include_router(auth.router, prefix="/api/auth", tags=["authentication"])
app.include_router(email_accounts.router, prefix="/api/email", tags=["email-accounts"])
app.include_router(emails.router, prefix="/api/email", tags=["emails"])
app.include_router(drafts.router, prefix="/api/drafts", tags=["drafts"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(rules.router, prefix="/api/rules", tags=["rules"])
app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(budget.router, prefix="/api/budget", tags=["budget"])


@app.get("/api/health")
async def health_check():
    return success({
        "timestamp": datetime.utcnow(),
        "service": APP_NAME,
    }, msg="邮件助手 API 运行中")


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=9999, reload=False)
