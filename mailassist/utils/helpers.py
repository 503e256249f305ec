import re
import html
import calendar
from datetime import date, datetime
from email.utils import parseaddr, getaddresses
from typing import Optional
from bs4 import BeautifulSoup
from fastapi import Request

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_PATTERN.match(value))


def parse_address(value: Optional[str]) -> dict:
    """
    解析单个地址
    例如: '"张三" <zhangsan@example.com>' -> {"email": "zhangsan@example.com", "name": "张三"}
    """
    if not value:
        return {"email": "", "name": ""}
    name, addr = parseaddr(value)
    return {"email": (addr or value).strip(), "name": name.strip()}


def parse_address_list(value: Optional[str]) -> list:
    if not value:
        return []
    return [
        {"email": addr.strip(), "name": name.strip()}
        for name, addr in getaddresses([value])
        if addr
    ]


def html_to_text(html_body: Optional[str]) -> str:
    """去掉脚本、样式与标签，压缩空白"""
    if not html_body:
        return ""
    soup = BeautifulSoup(html_body, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = html.unescape(soup.get_text(" "))
    return re.sub(r"\s+", " ", text).strip()


def make_snippet(text_body: Optional[str], html_body: Optional[str] = None, length: int = 200) -> str:
    content = text_body or html_to_text(html_body)
    return re.sub(r"\s+", " ", content or "").strip()[:length]


def current_period(today: Optional[date] = None):
    """返回当前预算周期（自然月）的起止日期"""
    today = today or date.today()
    start = today.replace(day=1)
    end = today.replace(day=calendar.monthrange(today.year, today.month)[1])
    return start, end


def period_start_datetime(today: Optional[date] = None) -> datetime:
    start, _ = current_period(today)
    return datetime(start.year, start.month, start.day)


def render_placeholders(text: Optional[str], variables: dict) -> str:
    """替换 {{name}} 占位符，未提供的变量保持原样"""
    if not text:
        return text or ""

    def _replace(match):
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"
