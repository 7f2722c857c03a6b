"""Wallet layer: chain definitions, token registry, encrypted key vault and
the high-level wallet service consumed by the API layer.

Plaintext key material only ever exists inside a :class:`KeyVault` unsealed
scope; everything persisted is AES-256-GCM ciphertext bound to the wallet's
chain and address.
"""
