import pytest
from pydantic import ValidationError

from taskdeck.api.schemas import (
    LoginRequest,
    RegisterRequest,
    RoleCreateRequest,
    UserResponse,
    _normalize_unicode,
)
from taskdeck.logging import sanitize_error_message
from taskdeck.storage.models import Role, User


def _register(**overrides):
    values = {
        "email": "a@x.com",
        "password": "Abc12345!",
        "first_name": "Ada",
        "last_name": "Lovelace",
    }
    values.update(overrides)
    return RegisterRequest(**values)


def test_email_is_trimmed_and_lowercased():
    assert _register(email="  Ada@Example.COM ").email == "ada@example.com"
    assert LoginRequest(email="ADA@example.com", password="x").email == "ada@example.com"


@pytest.mark.parametrize(
    "email", ["plain", "@example.com", "ada@", "ada@localhost", "ada@-bad-.com", "a b@x.com"]
)
def test_invalid_emails_are_rejected(email):
    with pytest.raises(ValidationError):
        _register(email=email)


@pytest.mark.parametrize("password", ["short", "x" * 129])
def test_password_length_bounds(password):
    with pytest.raises(ValidationError):
        _register(password=password)


def test_names_are_normalized_and_bounded():
    assert _register(first_name="  Ada\u200b ").first_name == "Ada"
    with pytest.raises(ValidationError):
        _register(last_name="L")
    with pytest.raises(ValidationError):
        _register(last_name="L" * 51)


def test_unicode_normalization_drops_invisible_characters():
    assert _normalize_unicode("ad\u200ba\u202e") == "ada"
    assert _normalize_unicode("\uff21da") == "Ada"


def test_role_names_are_lowercase_with_underscores():
    assert RoleCreateRequest(name="qa_lead", display_name="QA Lead").permissions == []
    with pytest.raises(ValidationError):
        RoleCreateRequest(name="QA Lead", display_name="QA Lead")


def test_user_response_never_exposes_password_hash():
    role = Role(id=4, name="user", display_name="User", permissions=["tasks.create"])
    user = User(
        id=1,
        email="a@x.com",
        password_hash="$argon2id$secret",
        first_name="Ada",
        last_name="Lovelace",
        role_id=4,
        role=role,
    )

    dumped = UserResponse.from_user(user).model_dump()

    assert "password_hash" not in dumped
    assert dumped["role"]["permissions"] == ["tasks.create"]


def test_error_messages_are_sanitized():
    message = sanitize_error_message("connection to db failed: password=hunter2 at /srv/app/x.py")

    assert "hunter2" not in message
    assert "/srv/app" not in message
    assert sanitize_error_message("") == "An error occurred"
