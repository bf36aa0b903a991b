import pytest
from fastapi import HTTPException

from campus_admin.core.auth import get_capabilities, get_current_user
from campus_admin.core.permissions import can_perform
from tests.conftest import make_token


def _bearer(token: str) -> str:
    return f"Bearer {token}"


def test_role_and_claims_read_from_app_metadata(jwt_env):
    token = make_token("Teacher", sub_roles=["dean", "janitor"], department="Physics")

    user = get_current_user(_bearer(token))

    assert user.role == "teacher"
    assert user.sub_roles == ("dean",)
    assert user.department == "Physics"
    assert user.email == "tests@example.com"


def test_capabilities_follow_the_role_claim(jwt_env):
    user = get_current_user(_bearer(make_token("teacher", sub_roles=["dean"])))

    caps = get_capabilities(user)

    assert can_perform(caps, "can_view:teacher")
    assert not can_perform(caps, "can_delete:student")


def test_missing_role_yields_no_capabilities(jwt_env):
    user = get_current_user(_bearer(make_token(None)))

    assert user.role is None
    assert get_capabilities(user).granted() == []


@pytest.mark.parametrize("header", [None, "", "Token abc", "Basic xyz"])
def test_missing_bearer_token_is_401(jwt_env, header):
    with pytest.raises(HTTPException) as excinfo:
        get_current_user(header)
    assert excinfo.value.status_code == 401


def test_wrong_secret_is_401(jwt_env):
    with pytest.raises(HTTPException) as excinfo:
        get_current_user(_bearer(make_token("staff", secret="other-secret")))
    assert excinfo.value.status_code == 401


def test_wrong_audience_is_401(jwt_env):
    with pytest.raises(HTTPException) as excinfo:
        get_current_user(_bearer(make_token("staff", aud="someone-else")))
    assert excinfo.value.status_code == 401


def test_missing_secret_is_500(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "")

    with pytest.raises(HTTPException) as excinfo:
        get_current_user(_bearer(make_token("staff")))
    assert excinfo.value.status_code == 500
