try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import base64
import hashlib
import re

import pytest

from oauth_proxy.clients.google_auth import OAuthStateEncoder
from oauth_proxy.core.errors import InvalidRequestError
from oauth_proxy.services import pkce
from oauth_proxy.services.redirect_guard import RedirectGuard


def test_pkce_pair_matches_rfc7636_s256() -> None:
    pair = pkce.generate_pair()

    expected = (
        base64.urlsafe_b64encode(hashlib.sha256(pair.verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )
    assert pair.method == "S256"
    assert pair.challenge == expected
    assert len(pair.verifier) == 64
    assert re.fullmatch(r"[A-Za-z0-9_\-]+", pair.verifier)
    assert pkce.verify(pair.verifier, pair.challenge)
    assert not pkce.verify(pair.verifier + "x", pair.challenge)


def test_pkce_rfc_example_vector() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pkce.generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.mark.parametrize("length", [42, 129])
def test_pkce_verifier_length_bounds(length: int) -> None:
    with pytest.raises(ValueError):
        pkce.generate_code_verifier(length)


@pytest.fixture
def guard() -> RedirectGuard:
    return RedirectGuard(
        allowed_hosts=("chat.openai.com", "chatgpt.com"),
        extra_redirect_uris=("https://agent.example.com/callback",),
    )


@pytest.mark.parametrize(
    "uri",
    [
        "https://chat.openai.com/aip/g-abc123/oauth/callback",
        "https://chatgpt.com/aip/g-XYZ789/oauth/callback",
        "https://agent.example.com/callback",
    ],
)
def test_redirect_guard_accepts_registered_shapes(guard: RedirectGuard, uri: str) -> None:
    assert guard.validate_redirect_uri(uri)


@pytest.mark.parametrize(
    "uri",
    [
        None,
        "",
        "http://chat.openai.com/aip/g-abc123/oauth/callback",
        "https://evil.com/aip/g-abc123/oauth/callback",
        "https://chat.openai.com.evil.com/aip/g-abc123/oauth/callback",
        "https://chat.openai.com/aip/g-abc123/oauth/callback?next=https://evil.com",
        "https://chatgpt.com/aip/abc123/oauth/callback",
        "http://localhost:3000/callback",
    ],
)
def test_redirect_guard_rejects_everything_else(guard: RedirectGuard, uri) -> None:
    assert not guard.validate_redirect_uri(uri)


def test_redirect_guard_pins_agent_id_and_localhost_in_development() -> None:
    guard = RedirectGuard(
        allowed_hosts=("chatgpt.com",), agent_id="g-pinned", allow_localhost=True
    )

    assert guard.validate_redirect_uri("https://chatgpt.com/aip/g-pinned/oauth/callback")
    assert guard.validate_redirect_uri("http://localhost:8080/callback")


@pytest.mark.parametrize(
    ("code", "valid"),
    [
        ("a" * 64, True),
        ("short", False),
        ("a" * 513, False),
        ("abc def ghi jkl", False),
        (None, False),
    ],
)
def test_auth_code_shape_check(code, valid: bool) -> None:
    assert RedirectGuard.validate_auth_code(code) is valid


def test_state_encoder_round_trip_and_tamper_detection() -> None:
    encoder = OAuthStateEncoder("state-secret")
    payload = {"client_state": "xyz", "code_verifier": "v" * 64}

    token = encoder.encode(payload)
    assert "=" not in token
    assert encoder.decode(token) == payload

    replacement = "A" if token[10] != "A" else "B"
    tampered = token[:10] + replacement + token[11:]
    with pytest.raises(InvalidRequestError) as exc_info:
        encoder.decode(tampered)
    assert exc_info.value.code == "INVALID_STATE"

    with pytest.raises(InvalidRequestError):
        OAuthStateEncoder("other-secret").decode(token)
