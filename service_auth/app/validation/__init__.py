"""
Token validation package.

Validates HS256 session tokens asserted by the embedding host:

- codec: three-segment shape check and base64url/JSON segment decoding.
- signature: HS256 verification (PyJWT) with the app's shared secret.
- timestamps: expiry/not-before grading with clock skew tolerance.
- device: device class from client hints.
- token_validator: the ordered validation pipeline.

Per-request failures are returned as ``Invalid`` values, never raised.
"""
