"""
HS256 signature verification of session tokens.
"""

from typing import Optional

from jwt.api_jws import PyJWS
from jwt.exceptions import InvalidAlgorithmError, InvalidTokenError

from .models import ErrorKind


class SignatureVerifier:
    """Verifies compact HS256 tokens against a shared secret."""

    algorithm = "HS256"

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("shared secret must not be empty")
        self._secret = secret
        self._jws = PyJWS(algorithms=[self.algorithm])

    def verify(self, token: str) -> Optional[ErrorKind]:
        """Return the failure kind, or None when the signature holds."""
        try:
            self._jws.decode_complete(token, self._secret, algorithms=[self.algorithm])
        except InvalidAlgorithmError:
            return ErrorKind.UNSUPPORTED_ALGORITHM
        except InvalidTokenError:
            # Also covers headers that cannot be honoured, such as unknown ``crit`` entries.
            return ErrorKind.SIGNATURE_MISMATCH
        return None
