# x402gate/protocol/__init__.py
"""
x402 Payment Protocol Engine for Solana.

This module implements the x402 HTTP 402 challenge/response protocol with
SPL token payments: the merchant demands a charge, the customer answers with
a partially-signed transaction, and the merchant settles and records it.

Key components:
- requirements: challenge building and WWW-Authenticate / X-PAYMENT encoding
- codec: wire-exact transaction framing and partial-signature packing
- customer: payment construction and signing for the paying side
- verifier: on-chain settlement verification against expected charges
- forwarder: facilitator co-signing and broadcast
- replay: exactly-once reservation of settlement signatures
- middleware: FastAPI middleware tying the flow together
- audit: transaction audit logging

Configuration is loaded from environment variables via x402gate.core.config.
"""

__version__ = "0.1.0"
