"""
Auth Service package for the session auth engine.

This package exposes the FastAPI application that authenticates session
tokens issued by the embedding platform:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.orchestrator: Ordered authentication strategies per request.
- app.validation: Token decoding, signature and timestamp checks.
- app.exchange: Token exchange client with retry and challenge handling.
- app.sessions: In-memory session cache.

Design notes:
- Module import must not perform network calls. All IO happens in route
  handlers or explicit startup hooks.
- Use the shared/ utilities for logging, metrics, and errors.
- Session state is process-local; a restart only costs a re-exchange.
"""
