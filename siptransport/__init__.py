"""SIP message transports (UDP, TCP, TLS, WS, WSS), connection pool, URI and helpers."""

__version__ = "0.1.0"