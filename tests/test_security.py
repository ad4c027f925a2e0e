import pytest
from starlette.requests import Request

from shared.security_config import client_ip, normalize_code, sanitize_input, slugify, validate_password_strength


def make_request(headers=None, client=("10.0.0.1", 1234)):
    scope = {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_sanitize_input_escapes_and_strips():
    assert sanitize_input("  <b>Ada</b>\x07 ") == "&lt;b&gt;Ada&lt;/b&gt;"
    assert sanitize_input(None) is None


def test_normalize_code():
    assert normalize_code(" save10 ") == "SAVE10"
    assert normalize_code(None) == ""


def test_slugify():
    assert slugify("  Mango Habanero 2.0! ") == "mango-habanero-2-0"


@pytest.mark.parametrize("password, ok", [
    ("Password123", True),
    ("password123", False),
    ("PASSWORD123", False),
    ("Password", False),
    ("Pass12", False),
])
def test_password_strength(password, ok):
    assert validate_password_strength(password) is ok


def test_client_ip_prefers_forwarded_header():
    assert client_ip(make_request({"X-Forwarded-For": "203.0.113.9, 10.0.0.2"})) == "203.0.113.9"
    assert client_ip(make_request()) == "10.0.0.1"
