def test_register_returns_token_and_public_user(client) -> None:
    res = client.post(
        "/api/auth/register",
        json={"email": "a@x.com", "fullName": "A", "password": "secret1", "confirmPassword": "secret1"},
    )
    assert res.status_code == 201
    body = res.json()
    assert body["token"]
    assert body["user"]["email"] == "a@x.com"
    assert body["user"]["fullName"] == "A"
    assert "password" not in body["user"]
    assert "passwordHash" not in body["user"]


def test_register_duplicate_email_conflicts(client, register) -> None:
    register("dup@x.com")
    res = client.post(
        "/api/auth/register",
        json={"email": "dup@x.com", "fullName": "B", "password": "secret2", "confirmPassword": "secret2"},
    )
    assert res.status_code == 400
    assert res.json()["error"] == "User with this email already exists"


def test_email_uniqueness_is_case_sensitive(client, register) -> None:
    register("case@x.com")
    res = client.post(
        "/api/auth/register",
        json={"email": "Case@x.com", "fullName": "C", "password": "secret1", "confirmPassword": "secret1"},
    )
    assert res.status_code == 201


def test_register_rejects_bad_payloads(client) -> None:
    short = client.post(
        "/api/auth/register",
        json={"email": "s@x.com", "fullName": "S", "password": "abc", "confirmPassword": "abc"},
    )
    assert short.status_code == 400
    assert short.json()["error"] == "Validation failed"
    assert any(d["field"] == "password" for d in short.json()["details"])

    mismatch = client.post(
        "/api/auth/register",
        json={"email": "m@x.com", "fullName": "M", "password": "secret1", "confirmPassword": "secret2"},
    )
    assert mismatch.status_code == 400

    bad_email = client.post(
        "/api/auth/register",
        json={"email": "not-an-email", "fullName": "E", "password": "secret1", "confirmPassword": "secret1"},
    )
    assert bad_email.status_code == 400


def test_login_success_and_uniform_failure(client, register) -> None:
    register("login@x.com", password="secret1")
    ok = client.post("/api/auth/login", json={"email": "login@x.com", "password": "secret1"})
    assert ok.status_code == 200
    assert ok.json()["token"]
    assert ok.json()["user"]["email"] == "login@x.com"

    wrong_password = client.post("/api/auth/login", json={"email": "login@x.com", "password": "nope123"})
    unknown_user = client.post("/api/auth/login", json={"email": "ghost@x.com", "password": "secret1"})
    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json() == unknown_user.json() == {"error": "Invalid email or password"}


def test_protected_routes_require_valid_token(client, headers) -> None:
    missing = client.get("/api/transactions")
    assert missing.status_code == 401
    assert missing.json() == {"error": "Access token required"}

    header, payload, signature = headers["Authorization"].split(" ", 1)[1].split(".")
    mid = len(signature) // 2
    flipped = "A" if signature[mid] != "A" else "B"
    tampered = ".".join([header, payload, signature[:mid] + flipped + signature[mid + 1:]])
    res = client.get("/api/transactions", headers={"Authorization": f"Bearer {tampered}"})
    assert res.status_code == 401
    assert res.json() == {"error": "Invalid or expired token"}

    malformed = client.get("/api/transactions", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401


def test_me_returns_current_user(client, register) -> None:
    headers = register("me@x.com", full_name="Me Myself")
    res = client.get("/api/auth/me", headers=headers)
    assert res.status_code == 200
    assert res.json()["email"] == "me@x.com"
    assert res.json()["fullName"] == "Me Myself"


def test_change_password(client, register) -> None:
    headers = register("pw@x.com", password="secret1")

    wrong = client.put(
        "/api/auth/change-password",
        json={"currentPassword": "bad-one", "newPassword": "secret2"},
        headers=headers,
    )
    assert wrong.status_code == 400
    assert wrong.json() == {"error": "Current password is incorrect"}

    ok = client.put(
        "/api/auth/change-password",
        json={"currentPassword": "secret1", "newPassword": "secret2"},
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json() == {"message": "Password changed successfully"}

    assert client.post("/api/auth/login", json={"email": "pw@x.com", "password": "secret1"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "pw@x.com", "password": "secret2"}).status_code == 200


def test_change_password_for_unknown_user(client, app) -> None:
    token = app.state.auth.issue_token({"id": 9999, "email": "ghost@x.com"})
    res = client.put(
        "/api/auth/change-password",
        json={"currentPassword": "secret1", "newPassword": "secret2"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 404
    assert res.json() == {"error": "User not found"}


def test_change_password_requires_token(client) -> None:
    res = client.put("/api/auth/change-password", json={"currentPassword": "secret1", "newPassword": "secret2"})
    assert res.status_code == 401
