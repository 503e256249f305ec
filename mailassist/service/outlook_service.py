"""
Outlook 适配器：基于 Microsoft Graph 的 OAuth(PKCE)、拉取与发送
"""
import base64
import hashlib
import json
import os
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from mailassist.utils.helpers import make_snippet
from mailassist.utils.logger import get_logger

logger = get_logger("outlook_service")

MICROSOFT_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
MICROSOFT_CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")
MICROSOFT_REDIRECT_URI = os.getenv("MICROSOFT_REDIRECT_URI")
MICROSOFT_TENANT_ID = os.getenv("MICROSOFT_TENANT_ID", "common")

AUTH_BASE_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
SCOPES = ["User.Read", "Mail.Read", "Mail.ReadWrite", "Mail.Send", "offline_access"]
REFRESH_SCOPE = "https://graph.microsoft.com/Mail.Read https://graph.microsoft.com/Mail.Send offline_access"

TIMEOUT = 30.0


class OutlookAPIError(Exception):
    pass


def _token_url() -> str:
    return f"{AUTH_BASE_URL}/{MICROSOFT_TENANT_ID}/oauth2/v2.0/token"


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(32)


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def get_auth_url(user_id: int) -> str:
    code_verifier = generate_code_verifier()
    params = {
        "client_id": MICROSOFT_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": MICROSOFT_REDIRECT_URI,
        "scope": " ".join(SCOPES),
        "response_mode": "query",
        "state": json.dumps({"userId": user_id, "codeVerifier": code_verifier}),
        "prompt": "consent",
        "code_challenge": generate_code_challenge(code_verifier),
        "code_challenge_method": "S256",
    }
    return f"{AUTH_BASE_URL}/{MICROSOFT_TENANT_ID}/oauth2/v2.0/authorize?{urlencode(params)}"


def _token_request(data: dict) -> dict:
    with httpx.Client(timeout=TIMEOUT) as client:
        response = client.post(_token_url(), data=data)
    if response.status_code != 200:
        try:
            detail = response.json().get("error_description") or response.reason_phrase
        except ValueError:
            detail = response.reason_phrase
        raise OutlookAPIError(f"令牌请求失败: {detail}")

    tokens = response.json()
    return {
        "access_token": tokens["access_token"],
        "refresh_token": tokens.get("refresh_token"),
        "expires_at": datetime.utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600))),
    }


def exchange_code(code: str, code_verifier: str = None) -> dict:
    data = {
        "client_id": MICROSOFT_CLIENT_ID,
        "client_secret": MICROSOFT_CLIENT_SECRET,
        "code": code,
        "redirect_uri": MICROSOFT_REDIRECT_URI,
        "grant_type": "authorization_code",
        "scope": " ".join(SCOPES),
    }
    if code_verifier:
        data["code_verifier"] = code_verifier
    return _token_request(data)


def refresh_access_token(refresh_token: str) -> dict:
    if not MICROSOFT_CLIENT_ID or not MICROSOFT_CLIENT_SECRET:
        raise OutlookAPIError("未配置 Microsoft OAuth 凭据")
    try:
        tokens = _token_request({
            "client_id": MICROSOFT_CLIENT_ID,
            "client_secret": MICROSOFT_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": REFRESH_SCOPE,
        })
    except (OutlookAPIError, httpx.HTTPError) as e:
        logger.error(f"刷新Outlook令牌失败: {e}")
        raise OutlookAPIError(f"刷新Outlook令牌失败: {e}")
    tokens["refresh_token"] = tokens["refresh_token"] or refresh_token
    return tokens


def _graph_get(access_token: str, path: str, params: dict = None) -> dict:
    with httpx.Client(base_url=GRAPH_BASE_URL, timeout=TIMEOUT) as client:
        response = client.get(path, params=params, headers={"Authorization": f"Bearer {access_token}"})
    if response.status_code != 200:
        raise OutlookAPIError(f"Outlook API 错误: {response.status_code} {response.reason_phrase}")
    return response.json()


def get_profile(access_token: str) -> dict:
    """返回 {email, display_name}"""
    profile = _graph_get(access_token, "/me")
    return {
        "email": profile.get("mail") or profile.get("userPrincipalName"),
        "display_name": profile.get("displayName"),
    }


def fetch_messages(access_token: str, since: datetime, max_results: int) -> list:
    data = _graph_get(access_token, "/me/messages", params={
        "$filter": f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        "$top": max_results,
        "$orderby": "receivedDateTime desc",
    })

    results = []
    for message in data.get("value", []):
        try:
            results.append(parse_message(message))
        except Exception as e:
            logger.error(f"处理Outlook邮件 {message.get('id')} 失败: {e}", exc_info=True)
    return results


def _recipients(items: list) -> list:
    return [
        {"email": r["emailAddress"].get("address"), "name": r["emailAddress"].get("name", "")}
        for r in items or []
        if r.get("emailAddress")
    ]


def _parse_datetime(value: str) -> datetime:
    if not value:
        return datetime.utcnow()
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_message(message: dict) -> dict:
    body = message.get("body") or {}
    is_html = (body.get("contentType") or "").lower() == "html"
    sender = (message.get("from") or {}).get("emailAddress") or {}
    preview = message.get("bodyPreview") or ""

    return {
        "message_id": message["id"],
        "thread_id": message.get("conversationId"),
        "subject": message.get("subject") or "(无主题)",
        "from_address": sender.get("address", ""),
        "from_name": sender.get("name", ""),
        "to_addresses": _recipients(message.get("toRecipients")),
        "cc_addresses": _recipients(message.get("ccRecipients")),
        "body_text": preview if is_html else (body.get("content") or preview),
        "body_html": body.get("content") if is_html else None,
        "snippet": make_snippet(preview, body.get("content") if is_html else None),
        "received_at": _parse_datetime(message.get("receivedDateTime")),
        "is_read": bool(message.get("isRead")),
        "is_starred": (message.get("flag") or {}).get("flagStatus") == "flagged",
        "labels": message.get("categories") or [],
        "has_attachments": bool(message.get("hasAttachments")),
        "attachments": [],
    }


def send_mail(access_token: str, to: str, subject: str, body: str, in_reply_to: str = None):
    message = {
        "subject": subject,
        "body": {"contentType": "Text", "content": body},
        "toRecipients": [{"emailAddress": {"address": to}}],
    }
    if in_reply_to:
        message["internetMessageHeaders"] = [{"name": "X-In-Reply-To", "value": in_reply_to}]

    with httpx.Client(base_url=GRAPH_BASE_URL, timeout=TIMEOUT) as client:
        response = client.post(
            "/me/sendMail",
            json={"message": message},
            headers={"Authorization": f"Bearer {access_token}"},
        )
    if response.status_code not in (200, 202):
        raise OutlookAPIError(f"Outlook 发送失败: {response.status_code} {response.reason_phrase}")
