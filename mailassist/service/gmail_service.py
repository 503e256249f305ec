"""
Gmail 适配器：OAuth 授权、令牌刷新、拉取与发送邮件
"""
import base64
import json
import os
from datetime import datetime, timezone

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from mailassist.utils.helpers import parse_address, parse_address_list, make_snippet
from mailassist.utils.logger import get_logger

logger = get_logger("gmail_service")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")
TOKEN_URI = "https://oauth2.googleapis.com/token"

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
]


def _flow(state: str = None) -> Flow:
    return Flow.from_client_config(
        {
            "web": {
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": TOKEN_URI,
            }
        },
        scopes=SCOPES,
        redirect_uri=GOOGLE_REDIRECT_URI,
        state=state,
        # 回调请求无服务端会话，不使用PKCE
        autogenerate_code_verifier=False,
    )


def get_auth_url(user_id: int) -> str:
    state = json.dumps({"userId": user_id})
    auth_url, _ = _flow(state).authorization_url(
        access_type="offline",
        prompt="consent",
    )
    return auth_url


def exchange_code(code: str) -> dict:
    """用授权码换取令牌，返回 {access_token, refresh_token, expires_at}"""
    flow = _flow()
    flow.fetch_token(code=code)
    credentials = flow.credentials
    return {
        "access_token": credentials.token,
        "refresh_token": credentials.refresh_token,
        "expires_at": credentials.expiry,
    }


def build_credentials(access_token: str, refresh_token: str = None) -> Credentials:
    return Credentials(
        token=access_token,
        refresh_token=refresh_token,
        token_uri=TOKEN_URI,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=SCOPES,
    )


def refresh_access_token(refresh_token: str) -> dict:
    credentials = build_credentials(None, refresh_token)
    try:
        credentials.refresh(Request())
    except Exception as e:
        logger.error(f"刷新Gmail令牌失败: {e}", exc_info=True)
        raise RuntimeError(f"刷新Gmail令牌失败: {e}")
    return {
        "access_token": credentials.token,
        "refresh_token": credentials.refresh_token or refresh_token,
        "expires_at": credentials.expiry,
    }


def _service(access_token: str, refresh_token: str = None):
    return build("gmail", "v1", credentials=build_credentials(access_token, refresh_token), cache_discovery=False)


def get_profile_email(access_token: str) -> str:
    profile = _service(access_token).users().getProfile(userId="me").execute()
    return profile["emailAddress"]


def fetch_messages(access_token: str, refresh_token: str, since: datetime, max_results: int) -> list:
    """拉取 since 之后的邮件，返回标准化后的邮件字典列表"""
    service = _service(access_token, refresh_token)
    response = service.users().messages().list(
        userId="me",
        q=f"after:{int(since.replace(tzinfo=timezone.utc).timestamp())}",
        maxResults=max_results,
    ).execute()

    results = []
    for item in response.get("messages", []):
        try:
            message = service.users().messages().get(userId="me", id=item["id"], format="full").execute()
            results.append(parse_message(message))
        except Exception as e:
            logger.error(f"处理Gmail邮件 {item.get('id')} 失败: {e}", exc_info=True)
    return results


def _decode_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def _collect_parts(parts: list, bodies: dict, attachments: list):
    for part in parts or []:
        mime_type = part.get("mimeType", "")
        body = part.get("body") or {}
        if part.get("filename"):
            attachments.append({
                "filename": part["filename"],
                "mime_type": mime_type,
                "size": body.get("size", 0),
            })
        elif mime_type == "text/plain" and body.get("data") and not bodies["text"]:
            bodies["text"] = _decode_data(body["data"])
        elif mime_type == "text/html" and body.get("data") and not bodies["html"]:
            bodies["html"] = _decode_data(body["data"])
        elif mime_type.startswith("multipart/"):
            _collect_parts(part.get("parts"), bodies, attachments)


def parse_message(message: dict) -> dict:
    payload = message.get("payload") or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

    bodies = {"text": "", "html": ""}
    attachments = []
    top_body = payload.get("body") or {}
    if top_body.get("data"):
        if payload.get("mimeType") == "text/html":
            bodies["html"] = _decode_data(top_body["data"])
        else:
            bodies["text"] = _decode_data(top_body["data"])
    else:
        _collect_parts(payload.get("parts"), bodies, attachments)

    sender = parse_address(headers.get("from"))
    label_ids = message.get("labelIds") or []
    internal_date = message.get("internalDate")
    received_at = datetime.utcfromtimestamp(int(internal_date) / 1000) if internal_date else datetime.utcnow()

    return {
        "message_id": message["id"],
        "thread_id": message.get("threadId"),
        "subject": headers.get("subject") or "(无主题)",
        "from_address": sender["email"],
        "from_name": sender["name"],
        "to_addresses": parse_address_list(headers.get("to")),
        "cc_addresses": parse_address_list(headers.get("cc")),
        "body_text": bodies["text"],
        "body_html": bodies["html"],
        "snippet": message.get("snippet") or make_snippet(bodies["text"], bodies["html"]),
        "received_at": received_at,
        "is_read": "UNREAD" not in label_ids,
        "is_starred": "STARRED" in label_ids,
        "labels": label_ids,
        "has_attachments": bool(attachments),
        "attachments": attachments,
    }


def send_raw_message(access_token: str, refresh_token: str, raw_message: bytes, thread_id: str = None) -> dict:
    body = {"raw": base64.urlsafe_b64encode(raw_message).decode("ascii")}
    if thread_id:
        body["threadId"] = thread_id
    return _service(access_token, refresh_token).users().messages().send(userId="me", body=body).execute()
