"""Signature Engine - HMAC over the exact payload bytes.

Outbound deliveries carry `X-Webhook-Signature: sha256=<hex>`. Subscribers
(or health checks) verify by recomputing over the raw body they received.

Usage:
    engine = SignatureEngine()
    signature = engine.sign(body, secret)            # hex digest
    header = engine.header_value(signature)          # "sha256=<hex>"
    assert engine.verify(body, header, secret)
"""

import hashlib
import hmac
from typing import Union

_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


class SignatureEngine:
    """Computes and verifies keyed payload signatures."""

    def __init__(self, algorithm: str = "sha256"):
        if algorithm not in _ALGORITHMS:
            raise ValueError(f"Unsupported signature algorithm: {algorithm}")
        self._algorithm = algorithm
        self._digest = _ALGORITHMS[algorithm]

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def sign(self, payload: bytes, secret: Union[str, bytes]) -> str:
        """Compute the hex HMAC of payload keyed by secret.

        Args:
            payload: Exact bytes that will be sent
            secret: Subscription secret

        Returns:
            Hex-encoded signature
        """
        return hmac.new(_to_bytes(secret), payload, self._digest).hexdigest()

    def header_value(self, signature: str) -> str:
        """Format a signature for the signature header."""
        return f"{self._algorithm}={signature}"

    def verify(self, payload: bytes, signature: str, secret: Union[str, bytes]) -> bool:
        """Check a signature in constant time.

        Accepts either the bare hex digest or the "<algorithm>=<hex>" header form.
        """
        expected = self.sign(payload, secret)
        prefix = f"{self._algorithm}="
        if signature.startswith(prefix):
            signature = signature[len(prefix):]
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


_default_engine = SignatureEngine()


def sign(payload: bytes, secret: Union[str, bytes]) -> str:
    """Sign with the default SHA-256 engine."""
    return _default_engine.sign(payload, secret)


def verify(payload: bytes, signature: str, secret: Union[str, bytes]) -> bool:
    """Verify with the default SHA-256 engine."""
    return _default_engine.verify(payload, signature, secret)
