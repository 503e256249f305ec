"""
敏感凭据加密（邮箱密码、OAuth令牌）
AES-256-GCM，密钥为 sha256(ENCRYPTION_KEY)
"""
import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

TOKEN_PREFIX = "v1:"
NONCE_SIZE = 12
MIN_KEY_LENGTH = 32


class EncryptionError(Exception):
    pass


def _derive_key() -> bytes:
    raw = os.getenv("ENCRYPTION_KEY")
    if not raw:
        raise EncryptionError("缺少环境变量 ENCRYPTION_KEY")
    if len(raw) < MIN_KEY_LENGTH:
        raise EncryptionError(f"ENCRYPTION_KEY 长度至少为 {MIN_KEY_LENGTH} 个字符")
    return hashlib.sha256(raw.encode("utf-8")).digest()


def encrypt(text: str) -> str:
    if text is None:
        raise EncryptionError("待加密内容不能为空")
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(_derive_key()).encrypt(nonce, text.encode("utf-8"), None)
    payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii").rstrip("=")
    return f"{TOKEN_PREFIX}{payload}"


def decrypt(token: str) -> str:
    if token is None:
        raise EncryptionError("待解密内容不能为空")
    raw = str(token)
    if raw.startswith(TOKEN_PREFIX):
        raw = raw[len(TOKEN_PREFIX):]
    padded = raw + "=" * (-len(raw) % 4)
    try:
        blob = base64.urlsafe_b64decode(padded.encode("ascii"))
    except ValueError as e:
        raise EncryptionError("密文编码无效") from e
    if len(blob) <= NONCE_SIZE:
        raise EncryptionError("密文长度无效")
    try:
        plaintext = AESGCM(_derive_key()).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise EncryptionError("密文校验失败") from e
    return plaintext.decode("utf-8")


def hash_token(token: str) -> str:
    """会话表中保存令牌的 sha256 摘要，而不是令牌本身"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
