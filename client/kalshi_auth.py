"""
Kalshi RSA-based API key authentication.

Kalshi API v2 requires RSA-signed requests:
  - Header: KALSHI-ACCESS-KEY = api_key_id
  - Header: KALSHI-ACCESS-SIGNATURE = base64(RSA_PSS_SIGN(timestamp + method + path))
  - Header: KALSHI-ACCESS-TIMESTAMP = unix_ms

The key can come from a PEM file or inline from the environment, where
newlines are often stored escaped as a literal "\\n".
"""

from __future__ import annotations

import base64
import time
from pathlib import Path

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from client.retry import AuthError


class KalshiAuth:
    """Handles RSA key loading and request signing for Kalshi API v2."""

    def __init__(
        self,
        api_key_id: str,
        private_key_path: str = "",
        private_key_pem: str = "",
    ) -> None:
        if not api_key_id:
            raise AuthError("Kalshi API key id is not configured")
        self.api_key_id = api_key_id
        if private_key_pem:
            self._private_key = self._load_private_key(private_key_pem.encode("utf-8"))
        elif private_key_path:
            try:
                pem_data = Path(private_key_path).read_bytes()
            except OSError as e:
                raise AuthError(f"Cannot read Kalshi private key {private_key_path}: {e}") from e
            self._private_key = self._load_private_key(pem_data)
        else:
            raise AuthError("Kalshi private key is not configured")

    @staticmethod
    def _load_private_key(pem_data: bytes) -> rsa.RSAPrivateKey:
        """Load RSA private key from PEM bytes, unescaping literal \\n sequences."""
        pem_data = pem_data.replace(b"\\n", b"\n").strip()
        try:
            key = serialization.load_pem_private_key(pem_data, password=None)
        except (ValueError, TypeError) as e:
            raise AuthError(f"Malformed Kalshi private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise AuthError(f"Expected RSA private key, got {type(key).__name__}")
        return key

    def sign_request(self, method: str, path: str, timestamp_ms: int | None = None) -> dict[str, str]:
        """
        Generate authentication headers for a Kalshi API request.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: Request path without query string (e.g., /trade-api/v2/markets)
            timestamp_ms: Unix timestamp in milliseconds (auto-generated if None)

        Returns:
            Dict of headers to add to the request.
        """
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)

        message = f"{timestamp_ms}{method.upper()}{path.split('?')[0]}"
        signature = self._private_key.sign(
            message.encode("utf-8"),
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH,
            ),
            hashes.SHA256(),
        )
        sig_b64 = base64.b64encode(signature).decode("utf-8")

        return {
            "KALSHI-ACCESS-KEY": self.api_key_id,
            "KALSHI-ACCESS-SIGNATURE": sig_b64,
            "KALSHI-ACCESS-TIMESTAMP": str(timestamp_ms),
        }
