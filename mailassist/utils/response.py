from typing import Any
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success(data: Any = None, msg: str = "操作成功", status_code: int = 200):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": True,
            "message": msg,
            "data": data
        })
    )


def fail(msg: str = "操作失败", status_code: int = 500, data: Any = None):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": False,
            "message": msg,
            "data": data
        })
    )


def bad_request(msg: str = "请求参数错误", data: Any = None):
    return fail(msg, 400, data)


def unauthorized(msg: str = "未授权"):
    return fail(msg, 401)


def forbidden(msg: str = "禁止访问"):
    return fail(msg, 403)


def not_found(msg: str = "资源不存在"):
    return fail(msg, 404)


def method_not_allowed(msg: str = "不支持的请求方法"):
    return fail(msg, 405)


def server_error(msg: str = "服务器内部错误"):
    return fail(msg, 500)
