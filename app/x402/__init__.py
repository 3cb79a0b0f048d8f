# app/x402/__init__.py
"""
x402 payment-gated licensing of encrypted resources.

Key components:
- codec: X-PAYMENT decoding and X-PAYMENT-RESPONSE encoding
- vault: content key generation, wrapping and AES-GCM decryption
- requirements: payment requirements and 402 challenge bodies
- facilitator: local and delegated verify/settle
- gate: the per-request payment and licensing state machine
- publisher: encrypts and registers new resources
- audit: transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
