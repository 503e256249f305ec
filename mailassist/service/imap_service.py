import imaplib
import smtplib
import email
import ssl
import re
import socket
from email.header import decode_header
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid, formatdate
from datetime import datetime, timezone

from mailassist.model.email_account import EmailAccount
from mailassist.utils.encryption import decrypt
from mailassist.utils.helpers import parse_address, parse_address_list, make_snippet
from mailassist.utils.logger import get_logger

# 初始化日志
logger = get_logger("imap_service")

CONNECT_TIMEOUT = 15

# 常用服务商的服务器预设
PROVIDER_PRESETS = {
    "gmail": {"imap_host": "imap.gmail.com", "imap_port": 993, "smtp_host": "smtp.gmail.com", "smtp_port": 587},
    "outlook": {"imap_host": "outlook.office365.com", "imap_port": 993, "smtp_host": "smtp.office365.com", "smtp_port": 587},
    "icloud": {"imap_host": "imap.mail.me.com", "imap_port": 993, "smtp_host": "smtp.mail.me.com", "smtp_port": 587},
    "yahoo": {"imap_host": "imap.mail.yahoo.com", "imap_port": 993, "smtp_host": "smtp.mail.yahoo.com", "smtp_port": 587},
    "spacemail": {"imap_host": "mail.spacemail.com", "imap_port": 993, "smtp_host": "mail.spacemail.com", "smtp_port": 465},
}

IMAP_PROVIDERS = ("icloud", "spacemail", "yahoo", "custom")


class ImapConnectionError(Exception):
    """连接或登录失败，message 为可直接展示给用户的原因"""


def friendly_error(e: Exception) -> str:
    text = str(e).lower()
    if isinstance(e, imaplib.IMAP4.error) or "authenticat" in text or "login" in text:
        return "邮箱或密码错误，部分服务商需要使用应用专用密码"
    if isinstance(e, (socket.timeout, TimeoutError)) or "timed out" in text:
        return "连接超时，请检查服务器地址和端口"
    if isinstance(e, socket.gaierror) or "name or service not known" in text or "nodename" in text:
        return "找不到邮件服务器，请检查服务器地址"
    return f"连接邮件服务器失败: {e}"


class ImapService:
    def __init__(self, email_address: str, password: str, imap_host: str, imap_port: int = 993,
                 smtp_host: str = None, smtp_port: int = 587, username: str = None, account_id: int = None):
        self.email_address = email_address
        self.password = password
        self.imap_host = imap_host
        self.imap_port = imap_port or 993
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port or 587
        self.username = username or email_address
        self.account_id = account_id
        self.imap = None

    @classmethod
    def from_account(cls, account: EmailAccount) -> "ImapService":
        if not account.password_encrypted:
            raise ImapConnectionError("账户未保存密码")
        return cls(
            email_address=account.email,
            password=decrypt(account.password_encrypted),
            imap_host=account.imap_host,
            imap_port=account.imap_port,
            smtp_host=account.smtp_host,
            smtp_port=account.smtp_port,
            username=account.username,
            account_id=account.id,
        )

    def _connect(self):
        try:
            context = ssl.create_default_context()
            self.imap = imaplib.IMAP4_SSL(self.imap_host, self.imap_port, ssl_context=context, timeout=CONNECT_TIMEOUT)
            self.imap.login(self.username, self.password)
        except Exception as e:
            logger.error(f"IMAP连接失败 {self.email_address}@{self.imap_host}:{self.imap_port}: {e}")
            self.imap = None
            raise ImapConnectionError(friendly_error(e))

    def _disconnect(self):
        if self.imap:
            try:
                self.imap.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP登出失败: {e}")
            self.imap = None

    def test_connection(self) -> bool:
        """尝试登录后立即断开，失败时抛出 ImapConnectionError"""
        self._connect()
        self._disconnect()
        logger.info(f"IMAP连接测试成功: {self.email_address}")
        return True

    def fetch_since(self, since: datetime, limit: int) -> list:
        """拉取收件箱中 since 之后的最近 limit 封邮件"""
        self._connect()
        try:
            status, _ = self.imap.select("INBOX", readonly=True)
            if status != "OK":
                raise ImapConnectionError("无法打开收件箱")

            status, data = self.imap.uid("search", None, f"SINCE {since.strftime('%d-%b-%Y')}")
            if status != "OK" or not data or not data[0]:
                return []

            uids = data[0].split()[-limit:]
            results = []
            for uid in uids:
                parsed = self._fetch_and_parse(uid)
                if parsed:
                    results.append(parsed)
            return results
        finally:
            self._disconnect()

    def _fetch_and_parse(self, uid: bytes):
        try:
            status, msg_data = self.imap.uid("fetch", uid, "(FLAGS BODY.PEEK[])")
            if status != "OK" or not msg_data or msg_data[0] is None:
                return None
        except Exception as e:
            logger.error(f"获取 UID {uid.decode()} 的邮件失败: {e}")
            return None

        flags = []
        raw_email_data = None
        for part in msg_data:
            if isinstance(part, tuple):
                flags_match = re.search(r"FLAGS \((.*?)\)", part[0].decode("utf-8", "ignore"))
                if flags_match:
                    flags = flags_match.group(1).split()
                if len(part) > 1 and isinstance(part[1], bytes):
                    raw_email_data = part[1]
            elif isinstance(part, bytes) and not flags:
                flags_match = re.search(r"FLAGS \((.*?)\)", part.decode("utf-8", "ignore"))
                if flags_match:
                    flags = flags_match.group(1).split()

        if not raw_email_data:
            return None

        try:
            return self.parse_message(email.message_from_bytes(raw_email_data), uid.decode(), flags)
        except Exception as e:
            logger.error(f"解析 UID {uid.decode()} 的邮件失败: {e}", exc_info=True)
            return None

    def parse_message(self, msg: email.message.Message, uid: str, flags: list = None) -> dict:
        flags = flags or []
        sender = parse_address(self._decode_header(msg.get("From", "")))
        text_body, html_body = self._get_email_body(msg)
        attachments = self._collect_attachments(msg)

        try:
            received_at = email.utils.parsedate_to_datetime(msg.get("Date", ""))
            if received_at.tzinfo:
                received_at = received_at.astimezone(timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError):
            received_at = datetime.utcnow()

        return {
            "message_id": (msg.get("Message-ID") or "").strip() or f"{self.account_id}-{uid}",
            "thread_id": (msg.get("In-Reply-To") or "").strip() or None,
            "subject": self._decode_header(msg.get("Subject", "")) or "(无主题)",
            "from_address": sender["email"],
            "from_name": sender["name"],
            "to_addresses": parse_address_list(self._decode_header(msg.get("To", ""))),
            "cc_addresses": parse_address_list(self._decode_header(msg.get("Cc", ""))),
            "body_text": text_body,
            "body_html": html_body,
            "snippet": make_snippet(text_body, html_body),
            "received_at": received_at,
            "is_read": "\\Seen" in flags,
            "is_starred": "\\Flagged" in flags,
            "labels": [f for f in flags if not f.startswith("\\")],
            "has_attachments": bool(attachments),
            "attachments": attachments,
        }

    def _get_email_body(self, msg: email.message.Message):
        text_body = ""
        html_body = ""

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            content_type = part.get_content_type()
            if "attachment" in str(part.get("Content-Disposition")):
                continue
            if content_type not in ("text/plain", "text/html"):
                continue
            if (content_type == "text/plain" and text_body) or (content_type == "text/html" and html_body):
                continue
            payload = part.get_payload(decode=True) or b""
            try:
                decoded = payload.decode(part.get_content_charset() or "utf-8", errors="ignore")
            except LookupError:
                decoded = payload.decode("utf-8", errors="ignore")
            if content_type == "text/plain":
                text_body = decoded
            else:
                html_body = decoded

        return text_body, html_body

    def _decode_header(self, header: str) -> str:
        if not header:
            return ""
        header_parts = []
        for part, charset in decode_header(header):
            if isinstance(part, bytes):
                if not charset or charset.lower() == "unknown-8bit":
                    try:
                        header_parts.append(part.decode("utf-8"))
                    except UnicodeDecodeError:
                        try:
                            header_parts.append(part.decode("gb18030"))
                        except UnicodeDecodeError:
                            header_parts.append(part.decode("latin-1", errors="ignore"))
                else:
                    try:
                        header_parts.append(part.decode(charset, errors="ignore"))
                    except LookupError:
                        header_parts.append(part.decode("utf-8", errors="replace"))
            else:
                header_parts.append(part)
        return "".join(header_parts)

    def _collect_attachments(self, msg: email.message.Message) -> list:
        """
        收集真正的附件（不包括内嵌图片）
        """
        if not msg.is_multipart():
            return []

        attachments = []
        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            filename = part.get_filename()
            if not filename:
                continue
            content_disposition = str(part.get("Content-Disposition"))
            if "attachment" in content_disposition or not part.get("Content-ID"):
                payload = part.get_payload(decode=True) or b""
                attachments.append({
                    "filename": self._decode_header(filename),
                    "mime_type": part.get_content_type(),
                    "size": len(payload),
                })
        return attachments

    def send(self, to: str, subject: str, body: str, in_reply_to: str = None):
        """通过SMTP发送纯文本邮件，465端口使用隐式TLS，其余端口使用STARTTLS"""
        if not self.smtp_host:
            raise ImapConnectionError("账户未配置SMTP服务器")

        message = MIMEText(body, "plain", "utf-8")
        message["From"] = formataddr(("", self.email_address))
        message["To"] = to
        message["Subject"] = subject
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=self.email_address.split("@")[-1])
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
            message["References"] = in_reply_to

        context = ssl.create_default_context()
        if int(self.smtp_port) == 465:
            smtp_server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        else:
            smtp_server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            smtp_server.starttls(context=context)
        try:
            smtp_server.login(self.username, self.password)
            smtp_server.sendmail(self.email_address, [to], message.as_string())
        finally:
            smtp_server.quit()
        logger.info(f"SMTP发送成功: {self.email_address} -> {to}")
