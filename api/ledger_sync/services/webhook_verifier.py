"""Plaid webhook verification.

Plaid signs every webhook with a short-lived ES256 JWT sent in the
``Plaid-Verification`` header.  A webhook is accepted only when all of these hold:

    1. the header is present (looked up case-insensitively)
    2. the JWT header says alg == ES256 and nothing else, "none" included
    3. the signing key for the JWT's kid can be fetched and has not expired
    4. the signature verifies against that key
    5. request_body_sha256 matches the SHA-256 of the raw body
    6. iat is no older than the freshness window (5 minutes by default) and not
       more than a small clock skew in the future

Every failure raises the same VerificationFailed; the reason is only logged.
"""
import hashlib
import hmac
import logging
import threading
import time
from collections.abc import Callable, Mapping

from jose import jwt
from jose.exceptions import JOSEError

from ledger_sync.core.config import Settings
from ledger_sync.core.errors import UpstreamError, VerificationFailed

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "plaid-verification"
EXPECTED_ALGORITHM = "ES256"
MAX_CLOCK_SKEW_SECONDS = 30


def verification_bypass_allowed(config: Settings) -> bool:
    """Skipping verification is possible only in a non-production development setup."""
    return (
        config.plaid_webhook_skip_verification
        and config.environment == "development"
        and config.plaid_env != "production"
    )


def find_header(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class WebhookVerifier:
    def __init__(
        self,
        fetch_key: Callable[[str], dict],
        *,
        max_age_seconds: int = 300,
        key_cache_seconds: int = 24 * 60 * 60,
        skip_verification: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch_key = fetch_key
        self.max_age_seconds = max_age_seconds
        self.key_cache_seconds = key_cache_seconds
        self.skip_verification = skip_verification
        self._clock = clock
        self._keys: dict[str, tuple[dict, float]] = {}
        # verify() runs in worker threads
        self._keys_lock = threading.Lock()

    @classmethod
    def from_settings(cls, client, config: Settings) -> "WebhookVerifier":
        skip = verification_bypass_allowed(config)
        if skip:
            logger.warning("Plaid webhook verification is DISABLED (development only)")
        return cls(
            client.webhook_verification_key_get,
            max_age_seconds=config.webhook_max_age_seconds,
            key_cache_seconds=config.webhook_key_cache_seconds,
            skip_verification=skip,
        )

    def _reject(self, reason: str, *args) -> VerificationFailed:
        logger.warning("Webhook rejected: " + reason, *args)
        return VerificationFailed()

    def _signing_key(self, key_id: str) -> dict:
        with self._keys_lock:
            now = self._clock()
            cached = self._keys.get(key_id)
            if cached and now - cached[1] < self.key_cache_seconds:
                return cached[0]
            key = self._fetch_key(key_id)
            self._keys[key_id] = (key, now)
            return key

    def _forget_key(self, key_id: str) -> None:
        with self._keys_lock:
            self._keys.pop(key_id, None)

    def verify(self, headers: Mapping[str, str], body: bytes) -> dict | None:
        """Return the verified claims (None when bypassed) or raise VerificationFailed."""
        if self.skip_verification:
            return None

        token = find_header(headers, SIGNATURE_HEADER)
        if not token:
            raise self._reject("missing %s header", SIGNATURE_HEADER)

        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as exc:
            raise self._reject("malformed JWT header (%s)", exc)

        if header.get("alg") != EXPECTED_ALGORITHM:
            raise self._reject("unexpected algorithm %r", header.get("alg"))
        key_id = header.get("kid")
        if not key_id:
            raise self._reject("JWT header has no kid")

        try:
            key = self._signing_key(key_id)
        except (UpstreamError, KeyError) as exc:
            raise self._reject("could not fetch key %s (%s)", key_id, exc)
        if key.get("expired_at"):
            self._forget_key(key_id)
            raise self._reject("key %s has expired", key_id)

        try:
            claims = jwt.decode(token, key, algorithms=[EXPECTED_ALGORITHM])
        except JOSEError as exc:
            raise self._reject("signature check failed (%s)", exc)

        claimed_hash = claims.get("request_body_sha256")
        body_hash = hashlib.sha256(body).hexdigest()
        if not isinstance(claimed_hash, str) or not hmac.compare_digest(claimed_hash, body_hash):
            raise self._reject("body hash mismatch")

        issued_at = claims.get("iat")
        if not isinstance(issued_at, (int, float)) or isinstance(issued_at, bool):
            raise self._reject("missing iat")
        age = self._clock() - issued_at
        if age > self.max_age_seconds:
            raise self._reject("token issued %ds ago", int(age))
        if age < -MAX_CLOCK_SKEW_SECONDS:
            raise self._reject("token issued %ds in the future", int(-age))

        return claims
