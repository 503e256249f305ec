def test_health_is_public(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "邮件助手 API 运行中"
    assert "timestamp" in body["data"]
    assert body["data"]["service"]


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "接口不存在", "data": None}


def test_wrong_method_returns_405(client):
    response = client.delete("/api/health")
    assert response.status_code == 405
    assert response.json()["success"] is False


def test_validation_error_returns_400_with_custom_message(client):
    response = client.post("/api/auth/register", json={"email": "not-an-email", "password": "Password123"})
    assert response.status_code == 400
    assert response.json()["message"] == "请输入有效的邮箱地址"


def test_protected_route_requires_token(client):
    response = client.get("/api/rules")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "未提供令牌"


def test_invalid_token_rejected(client):
    response = client.get("/api/rules", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["message"] == "令牌无效或已过期"


def test_rate_limit_headers_and_429(client, monkeypatch):
    from mailassist.main import rate_limiter

    monkeypatch.setattr(rate_limiter, "max_requests", 2)
    first = client.get("/api/health")
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"

    client.get("/api/health")
    blocked = client.get("/api/health")
    assert blocked.status_code == 429
    body = blocked.json()
    assert body["success"] is False
    assert body["retryAfter"] > 0
    assert int(blocked.headers["Retry-After"]) > 0
