"""
Webhook verification with real ES256 signatures (python-jose + cryptography).
"""
import base64
import hashlib
import json
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwk, jwt

from ledger_sync.core.config import settings
from ledger_sync.core.errors import VerificationFailed
from ledger_sync.services.webhook_verifier import (
    WebhookVerifier,
    find_header,
    verification_bypass_allowed,
)
from tests.fakes import FakeAggregator

NOW = 1_790_000_000
BODY = json.dumps({
    "webhook_type": "TRANSACTIONS",
    "webhook_code": "SYNC_UPDATES_AVAILABLE",
    "item_id": "item-1",
}).encode()


def make_signing_key():
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def plaid_jwk(public_pem: str, kid: str, **extra) -> dict:
    key = jwk.construct(public_pem, "ES256").to_dict()
    key.update({"kid": kid, "use": "sig", "created_at": NOW - 3600, "expired_at": None})
    key.update(extra)
    return key


def sign(private_pem: str, body: bytes = BODY, kid: str = "key-1", iat: int = NOW, algorithm="ES256") -> str:
    claims = {"iat": iat, "request_body_sha256": hashlib.sha256(body).hexdigest()}
    return jwt.encode(claims, private_pem, algorithm=algorithm, headers={"kid": kid})


def b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def keypair():
    return make_signing_key()


@pytest.fixture
def client(keypair):
    _, public_pem = keypair
    return FakeAggregator(keys={"key-1": plaid_jwk(public_pem, "key-1")})


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def verifier(client, clock):
    return WebhookVerifier(client.webhook_verification_key_get, clock=clock)


class TestAccept:
    def test_valid_signature(self, verifier, keypair):
        private_pem, _ = keypair
        claims = verifier.verify({"Plaid-Verification": sign(private_pem)}, BODY)
        assert claims["request_body_sha256"] == hashlib.sha256(BODY).hexdigest()

    def test_header_lookup_is_case_insensitive(self, verifier, keypair):
        private_pem, _ = keypair
        assert verifier.verify({"PLAID-VERIFICATION": sign(private_pem)}, BODY)
        assert find_header({"plaid-verification": "x"}, "Plaid-Verification") == "x"

    def test_just_inside_window(self, verifier, keypair, clock):
        private_pem, _ = keypair
        clock.now = NOW + 299
        assert verifier.verify({"plaid-verification": sign(private_pem)}, BODY)

    def test_key_cached(self, verifier, keypair, client, clock):
        private_pem, _ = keypair
        verifier.verify({"plaid-verification": sign(private_pem)}, BODY)
        verifier.verify({"plaid-verification": sign(private_pem)}, BODY)
        assert client.key_requests == ["key-1"]

        clock.now = NOW + 24 * 60 * 60 + 1
        verifier.verify({"plaid-verification": sign(private_pem, iat=int(clock.now))}, BODY)
        assert client.key_requests == ["key-1", "key-1"]

    def test_small_clock_skew_tolerated(self, verifier, keypair):
        private_pem, _ = keypair
        assert verifier.verify({"plaid-verification": sign(private_pem, iat=NOW + 10)}, BODY)

    def test_concurrent_verifications_fetch_key_once(self, keypair, client, clock):
        private_pem, _ = keypair

        def slow_fetch(key_id):
            time.sleep(0.05)
            return client.webhook_verification_key_get(key_id)

        verifier = WebhookVerifier(slow_fetch, clock=clock)
        token = sign(private_pem)
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: verifier.verify({"plaid-verification": token}, BODY), range(4)))

        assert all(results)
        assert client.key_requests == ["key-1"]


class TestReject:
    def test_missing_header(self, verifier):
        with pytest.raises(VerificationFailed):
            verifier.verify({}, BODY)

    def test_tampered_body(self, verifier, keypair):
        private_pem, _ = keypair
        tampered = BODY.replace(b"item-1", b"item-2")
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(private_pem)}, tampered)

    def test_stale_token(self, verifier, keypair, clock):
        private_pem, _ = keypair
        clock.now = NOW + 301
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(private_pem)}, BODY)

    def test_token_from_the_future(self, verifier, keypair):
        private_pem, _ = keypair
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(private_pem, iat=NOW + 3600)}, BODY)

    def test_wrong_signing_key(self, verifier):
        other_private, _ = make_signing_key()
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(other_private)}, BODY)

    def test_unknown_kid(self, verifier, keypair):
        private_pem, _ = keypair
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(private_pem, kid="key-404")}, BODY)

    def test_hmac_algorithm_refused(self, verifier):
        token = sign("shared-secret", algorithm="HS256")
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": token}, BODY)

    def test_alg_none_refused(self, verifier):
        claims = {"iat": NOW, "request_body_sha256": hashlib.sha256(BODY).hexdigest()}
        token = f"{b64({'alg': 'none', 'kid': 'key-1'})}.{b64(claims)}."
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": token}, BODY)

    def test_garbage_token(self, verifier):
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": "not-a-jwt"}, BODY)

    def test_expired_key(self, keypair, clock):
        private_pem, public_pem = keypair
        client = FakeAggregator(keys={"key-1": plaid_jwk(public_pem, "key-1", expired_at=NOW - 10)})
        verifier = WebhookVerifier(client.webhook_verification_key_get, clock=clock)
        with pytest.raises(VerificationFailed):
            verifier.verify({"plaid-verification": sign(private_pem)}, BODY)

    def test_failure_message_is_generic(self, verifier):
        with pytest.raises(VerificationFailed) as exc:
            verifier.verify({}, BODY)
        assert str(exc.value) == "webhook verification failed"


class TestBypass:
    def test_bypass_skips_all_checks(self, client):
        verifier = WebhookVerifier(client.webhook_verification_key_get, skip_verification=True)
        assert verifier.verify({}, b"anything") is None

    def test_allowed_only_in_development(self):
        dev = settings.model_copy(update={
            "environment": "development", "plaid_env": "sandbox", "plaid_webhook_skip_verification": True,
        })
        assert verification_bypass_allowed(dev)
        assert not verification_bypass_allowed(dev.model_copy(update={"environment": "production"}))
        assert not verification_bypass_allowed(dev.model_copy(update={"plaid_env": "production"}))
        assert not verification_bypass_allowed(
            dev.model_copy(update={"plaid_webhook_skip_verification": False})
        )

    def test_from_settings_never_bypasses_in_production(self, client):
        prod = settings.model_copy(update={
            "environment": "production", "plaid_env": "production", "plaid_webhook_skip_verification": True,
        })
        assert WebhookVerifier.from_settings(client, prod).skip_verification is False
