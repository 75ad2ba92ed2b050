import pytest
from fastapi.testclient import TestClient

from finstat.config import Settings
from finstat.main import create_app

TEST_SECRET = "test-signing-key-0123456789abcdef0123456789abcdef"


@pytest.fixture(params=["memory", "sql"])
def settings(request, tmp_path) -> Settings:
    """Fast-hashing settings, once per storage backend."""
    if request.param == "sql":
        return Settings(
            storage_backend="sql",
            database_url=f"sqlite:///{tmp_path / 'finstat.db'}",
            jwt_secret=TEST_SECRET,
            bcrypt_rounds=4,
        )
    return Settings(jwt_secret=TEST_SECRET, bcrypt_rounds=4)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def register(client):
    def _register(email: str = "a@x.com", password: str = "secret1", full_name: str = "A") -> dict[str, str]:
        res = client.post(
            "/api/auth/register",
            json={"email": email, "fullName": full_name, "password": password, "confirmPassword": password},
        )
        assert res.status_code == 201, res.text
        return {"Authorization": f"Bearer {res.json()['token']}"}

    return _register


@pytest.fixture
def headers(register) -> dict[str, str]:
    return register()
