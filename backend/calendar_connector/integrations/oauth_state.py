import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 900
MAX_CLOCK_SKEW_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class StateTokenCodec:
    """Signs and verifies the OAuth ``state`` parameter.

    Tokens are ``base64(json) + "." + hex(hmac_sha256(secret, base64(json)))``. The payload
    is readable by anyone; only its integrity and age are enforced.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = STATE_TTL_SECONDS) -> None:
        if not secret:
            raise ValueError("secret is required")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _signature(self, encoded_payload: str) -> str:
        return hmac.new(self._secret, encoded_payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, payload: dict) -> str:
        body = dict(payload)
        body.setdefault("ts", _now_ms())
        raw_payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        encoded_payload = base64.b64encode(raw_payload).decode("ascii")
        return f"{encoded_payload}.{self._signature(encoded_payload)}"

    def verify(self, token: str, *, now_ms: int | None = None) -> dict | None:
        encoded_payload, separator, signature = (token or "").rpartition(".")
        if not separator or not encoded_payload:
            logger.debug("oauth_state_rejected reason=format")
            return None

        if not hmac.compare_digest(signature.encode("utf-8"), self._signature(encoded_payload).encode("utf-8")):
            logger.debug("oauth_state_rejected reason=signature")
            return None

        try:
            payload = json.loads(base64.b64decode(encoded_payload, validate=True))
        except (binascii.Error, ValueError):
            logger.debug("oauth_state_rejected reason=payload")
            return None
        if not isinstance(payload, dict):
            logger.debug("oauth_state_rejected reason=payload")
            return None

        issued_at = payload.get("ts")
        if isinstance(issued_at, bool) or not isinstance(issued_at, int):
            logger.debug("oauth_state_rejected reason=timestamp")
            return None
        now = now_ms if now_ms is not None else _now_ms()
        if now - issued_at > self.ttl_seconds * 1000 or issued_at - now > MAX_CLOCK_SKEW_MS:
            logger.debug("oauth_state_rejected reason=expired")
            return None

        return payload
