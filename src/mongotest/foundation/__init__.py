"""Foundation utilities shared by the container and database clients.

This package provides shared utilities including:
- Free-port allocation on the loopback interface
- Self-signed CA material for TLS-enabled instances
- Bounded retry helpers (tenacity)
- Circuit breaker for the container engine daemon
- Structured JSON logging
"""
