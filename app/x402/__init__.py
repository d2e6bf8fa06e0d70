# app/x402/__init__.py
"""
x402 payment-required access for content on Sui.

Payment and access grant happen in one on-chain transaction: the requester
calls the package's purchase function, which pays the creator and mints an
AccessReceipt owned by the requester. The gateway only ever reads receipts
to decide access, and optionally pays gas for the purchase.

Key components:
- access: receipt-based access gate (fails closed)
- challenge: 402 payment challenge generation
- coordinator: serialized sponsored execution and finality tracking
- sponsor: sponsor keypair and Sui intent signing
- receipts: AccessReceipt decoding and listing
- preflight: sponsor gas balance checks
- protocol: x402 wire format helpers
- audit: JSON-lines audit trail

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
