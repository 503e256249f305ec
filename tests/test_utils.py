import pytest

from mailassist.utils import encryption
from mailassist.utils.encryption import encrypt, decrypt, EncryptionError
from mailassist.utils.helpers import parse_address, parse_address_list, make_snippet, render_placeholders, current_period
from mailassist.utils.rate_limit import RateLimiter


def test_encrypt_produces_versioned_ciphertext():
    token = encrypt("app-password")
    assert token.startswith("v1:")
    assert "app-password" not in token
    assert decrypt(token) == "app-password"
    assert encrypt("app-password") != token


def test_decrypt_rejects_tampered_ciphertext():
    token = encrypt("secret")
    index = len("v1:") + 20
    replacement = "A" if token[index] != "A" else "B"
    tampered = token[:index] + replacement + token[index + 1:]
    with pytest.raises(EncryptionError):
        decrypt(tampered)


def test_short_encryption_key_is_rejected(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "too-short")
    with pytest.raises(EncryptionError):
        encryption.encrypt("secret")


def test_parse_address_with_display_name():
    assert parse_address('"张三" <zhangsan@example.com>') == {"email": "zhangsan@example.com", "name": "张三"}
    assert parse_address(None) == {"email": "", "name": ""}
    assert parse_address_list("a@example.com, B <b@example.com>") == [
        {"email": "a@example.com", "name": ""},
        {"email": "b@example.com", "name": "B"},
    ]


def test_make_snippet_falls_back_to_html():
    html = "<html><style>p{}</style><body><p>Hello&nbsp;<b>world</b></p></body></html>"
    assert make_snippet("", html) == "Hello world"
    assert len(make_snippet("x" * 500)) == 200


def test_render_placeholders_keeps_unknown_keys():
    text = "Hi {{name}}, order {{ order_id }} ships {{date}}"
    assert render_placeholders(text, {"name": "Ann", "order_id": 42}) == "Hi Ann, order 42 ships {{date}}"


def test_current_period_covers_whole_month():
    from datetime import date

    start, end = current_period(date(2024, 2, 14))
    assert start == date(2024, 2, 1)
    assert end == date(2024, 2, 29)


def test_rate_limiter_window_resets():
    limiter = RateLimiter(max_requests=2, window_ms=1000)
    assert limiter.check("ip", now_ms=0)["allowed"]
    assert limiter.check("ip", now_ms=10)["allowed"]
    denied = limiter.check("ip", now_ms=20)
    assert not denied["allowed"]
    assert denied["retry_after"] == 1
    assert limiter.check("other", now_ms=20)["allowed"]
    assert limiter.check("ip", now_ms=1500)["allowed"]
