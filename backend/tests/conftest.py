from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from campus_admin.core.config import get_settings
from campus_admin.services.entity_kinds import EntityKind, FieldSpec

TEST_JWT_SECRET = "test-secret"
UPSTREAM_BASE = "http://upstream.test"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # JWT and audit settings come from env vars that tests patch; never reuse a
    # Settings instance built for another test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def jwt_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
    get_settings.cache_clear()
    return TEST_JWT_SECRET


def make_token(
    role: str | None = "staff",
    *,
    sub: str = "00000000-0000-0000-0000-000000000001",
    sub_roles: list[str] | None = None,
    department: str | None = None,
    secret: str = TEST_JWT_SECRET,
    aud: str = "authenticated",
) -> str:
    app_meta: dict = {}
    if role is not None:
        app_meta["role"] = role
    if sub_roles:
        app_meta["sub_roles"] = sub_roles
    if department:
        app_meta["department"] = department
    payload = {
        "sub": sub,
        "email": "tests@example.com",
        "app_metadata": app_meta,
        "aud": aud,
        "iat": int(datetime.now(timezone.utc).timestamp()),
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    token = jwt.encode(payload, secret, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def build_auth_header(role: str | None = "staff", **kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(role, **kwargs)}"}


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []

        def _recording(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_recording)

    def paths(self, method: str | None = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]


def make_kind(
    name: str,
    *,
    fields: dict[str, str] | None = None,
    search_fields: tuple[str, ...] = (),
    start_field: str | None = None,
    end_field: str | None = None,
    id_field: str = "id",
) -> EntityKind:
    """Ad-hoc kind from a {field: type} table."""
    specs = {key: FieldSpec(key, type_) for key, type_ in (fields or {}).items()}
    return EntityKind(
        name=name,
        label=name,
        id_field=id_field,
        fields=specs,
        search_fields=tuple(search_fields),
        start_field=start_field,
        end_field=end_field,
    )
