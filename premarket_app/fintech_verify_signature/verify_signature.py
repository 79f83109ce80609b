import hashlib
import hmac
import time

from premarket_app.core.settings import settings


class FintechsVerifySignature:
    @staticmethod
    def compute_stripe_signature(secret: str, timestamp: int, body: bytes) -> str:
        signed_payload = f"{timestamp}.".encode() + body
        return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()

    @staticmethod
    def verify_stripe_signature(
        signature: str | None,
        body: bytes,
        secret: str | None = None,
        tolerance: int | None = None,
        now: float | None = None,
    ) -> bool:
        """Check a ``Stripe-Signature`` header (``t=...,v1=...``) against the raw body."""
        secret = secret or settings.STRIPE_WEBHOOK_SECRET
        if not signature or not secret:
            return False

        timestamp = None
        candidates = []
        for part in signature.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)

        if not timestamp or not timestamp.isdigit() or not candidates:
            return False

        tolerance = (
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
        )
        now = time.time() if now is None else now
        if tolerance and abs(now - int(timestamp)) > tolerance:
            return False

        expected = FintechsVerifySignature.compute_stripe_signature(
            secret, int(timestamp), body
        )
        return any(hmac.compare_digest(expected, c) for c in candidates)
