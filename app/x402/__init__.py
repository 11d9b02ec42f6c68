# app/x402/__init__.py
"""
Pay-per-call payment module.

Callers pay for each API call with an on-chain USDC transfer to the
operator wallet and present the transaction signature to the gateway.
Providers withdraw what their APIs earned through payouts.

Key components:
- verifier: on-chain payment verification by token-balance delta
- gateway: request lifecycle (payment demand, verification, proxying, usage logging)
- payout: provider payouts with guarded earning reset
- preflight: operator balance check before payouts
- audit: payment and payout audit trail

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
