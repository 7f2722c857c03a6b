"""Custodial multi-chain wallet core.

Generates and imports key material for EVM chains (Ethereum, BSC) and
Solana, keeps it encrypted at rest with AES-256-GCM, and builds, signs and
submits transfers through a failover pool of third-party RPC endpoints.
"""

__version__ = "0.1.0"
