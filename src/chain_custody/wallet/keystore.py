"""Encrypted key vault: mnemonics, derivation and AES-256-GCM at rest."""

from __future__ import annotations

import json
import logging
import os
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Mapping, Optional

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from solders.keypair import Keypair

from chain_custody.errors import ConfigError, DecryptionFailed, InvalidPrivateKey
from chain_custody.wallet import derivation
from chain_custody.wallet.chains import Chain, ChainFamily, get_chain

logger = logging.getLogger("chain_custody.wallet.keystore")

MASTER_KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class MasterKey:
    """Process-wide AES-256 key, loaded once at startup and never mutated.

    Construct it explicitly and hand it to :class:`KeyVault`; there is no
    module-level instance.
    """

    __slots__ = ("_key",)

    def __init__(self, key: bytes) -> None:
        if len(key) != MASTER_KEY_SIZE:
            raise ConfigError(
                f"Encryption key must be {MASTER_KEY_SIZE} bytes "
                f"({MASTER_KEY_SIZE * 2} hex characters)"
            )
        object.__setattr__(self, "_key", bytes(key))

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("MasterKey is immutable")

    def __repr__(self) -> str:
        return "MasterKey(<redacted>)"

    @classmethod
    def from_hex(cls, text: str) -> "MasterKey":
        value = (text or "").strip()
        if value.startswith(("0x", "0X")):
            value = value[2:]
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ConfigError("Encryption key must be a valid hex string") from exc
        return cls(raw)

    @classmethod
    def from_env(
        cls,
        var_name: str = "ENCRYPTION_KEY",
        env: Optional[Mapping[str, str]] = None,
    ) -> "MasterKey":
        """Load the key from the environment.

        Raises
        ------
        ConfigError
            If the variable is unset, not hex, or not 32 bytes.  Callers
            must treat this as fatal and refuse to start.
        """
        env = os.environ if env is None else env
        value = env.get(var_name)
        if not value:
            raise ConfigError(f"{var_name} is not set; refusing to start without a master key")
        return cls.from_hex(value)

    @staticmethod
    def generate_hex() -> str:
        """A fresh random key in the hex form ``from_hex`` accepts."""
        return secrets.token_hex(MASTER_KEY_SIZE)

    def cipher(self) -> AESGCM:
        return AESGCM(self._key)


class KeyMaterial:
    """Plaintext signing key held in a buffer that can be zeroed.

    For EVM chains the secret is the 32-byte secp256k1 private key; for
    Solana it is the 32-byte ed25519 seed.

    ``buffer`` is a read-only view of the zeroable storage and is what
    bytes-like consumers such as AES-GCM receive.  ``eth_account`` and
    ``solders`` only take ``bytes``, so ``secret`` hands them a copy that
    ``wipe()`` cannot reach; such copies live only as long as the signing
    call that made them.
    """

    def __init__(
        self,
        family: ChainFamily,
        secret: "bytes | bytearray",
        derivation_index: int = 0,
        from_mnemonic: bool = False,
    ) -> None:
        self.family = family
        self.derivation_index = derivation_index
        self.from_mnemonic = from_mnemonic
        self._buffer = bytearray(secret)
        self._wiped = False

    @property
    def buffer(self) -> memoryview:
        if self._wiped:
            raise RuntimeError("Key material has been wiped")
        return memoryview(self._buffer).toreadonly()

    @property
    def secret(self) -> bytes:
        if self._wiped:
            raise RuntimeError("Key material has been wiped")
        return bytes(self._buffer)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Overwrite the buffer with zeros."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    def __enter__(self) -> "KeyMaterial":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"KeyMaterial(family={self.family.value}, <redacted>)"


@dataclass(frozen=True)
class EncryptedKey:
    """AES-GCM output persisted as one record: nonce, ciphertext and tag."""

    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_blob(self) -> str:
        """Hex encoding of ``nonce || ciphertext || tag``."""
        return (self.nonce + self.ciphertext + self.tag).hex()

    @classmethod
    def from_blob(cls, blob: str) -> "EncryptedKey":
        try:
            raw = bytes.fromhex(blob)
        except (TypeError, ValueError) as exc:
            raise DecryptionFailed("Encrypted key blob is not valid hex") from exc
        if len(raw) <= NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed("Encrypted key blob is too short")
        return cls(
            nonce=raw[:NONCE_SIZE],
            ciphertext=raw[NONCE_SIZE:-TAG_SIZE],
            tag=raw[-TAG_SIZE:],
        )


def wallet_binding(chain: "str | Chain", address: str) -> bytes:
    """Associated data tying a ciphertext to the wallet row it belongs to."""
    return f"{get_chain(chain).tag}:{address}".encode("utf-8")


class KeyVault:
    """Generates, derives, encrypts and decrypts wallet key material.

    Parameters
    ----------
    master_key:
        The startup-loaded :class:`MasterKey`.  Read-only, so it is safe to
        share a vault between concurrent tasks.
    """

    def __init__(self, master_key: MasterKey) -> None:
        self._master_key = master_key

    # ------------------------------------------------------------------
    # Mnemonics and derivation
    # ------------------------------------------------------------------

    def generate_mnemonic(self) -> str:
        """A new 24-word phrase from fresh entropy.  Never reuse one."""
        return derivation.generate_mnemonic(24)

    def validate_mnemonic(self, phrase: str) -> str:
        return derivation.normalize_mnemonic(phrase)

    def derive_key(self, secret: str, chain: "str | Chain", derivation_index: int = 0) -> KeyMaterial:
        """Turn a mnemonic or a raw private key into signing key material.

        A multi-word secret is treated as a BIP-39 mnemonic and derived along
        the chain's BIP-44 path.  Anything else, including a JSON byte array
        (which may contain spaces), is parsed as a raw private key; raw keys
        bypass derivation and are always indexed as 0.
        """
        info = get_chain(chain)
        derivation.check_index(derivation_index)
        secret = (secret or "").strip()
        if not secret.startswith("[") and len(secret.split()) > 1:
            seed = derivation.mnemonic_to_seed(secret)
            key = derivation.derive_private_key(seed, info.family, derivation_index)
            return KeyMaterial(info.family, key, derivation_index, from_mnemonic=True)
        return self.import_private_key(secret, info)

    def import_private_key(self, secret: str, chain: "str | Chain") -> KeyMaterial:
        info = get_chain(chain)
        if info.family is ChainFamily.EVM:
            return KeyMaterial(info.family, _parse_evm_key(secret))
        return KeyMaterial(info.family, _parse_solana_key(secret))

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, key: KeyMaterial, associated_data: bytes = b"") -> EncryptedKey:
        """Encrypt with a fresh random 96-bit nonce."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._master_key.cipher().encrypt(nonce, key.buffer, associated_data)
        return EncryptedKey(nonce=nonce, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])

    def decrypt(
        self,
        encrypted: "EncryptedKey | str",
        chain: "str | Chain",
        associated_data: bytes = b"",
    ) -> KeyMaterial:
        """Decrypt or fail closed.

        Raises
        ------
        DecryptionFailed
            On a tag mismatch (tampering), a different master key, different
            associated data, or a malformed blob.
        """
        if isinstance(encrypted, str):
            encrypted = EncryptedKey.from_blob(encrypted)
        if len(encrypted.nonce) != NONCE_SIZE or len(encrypted.tag) != TAG_SIZE:
            raise DecryptionFailed("Encrypted key has a malformed nonce or tag")
        try:
            plaintext = self._master_key.cipher().decrypt(
                encrypted.nonce, encrypted.ciphertext + encrypted.tag, associated_data
            )
        except InvalidTag as exc:
            logger.warning("Rejected encrypted key: authentication tag mismatch")
            raise DecryptionFailed() from exc
        return KeyMaterial(get_chain(chain).family, plaintext)

    @contextmanager
    def unsealed(
        self,
        encrypted: "EncryptedKey | str",
        chain: "str | Chain",
        associated_data: bytes = b"",
    ) -> Iterator[KeyMaterial]:
        """Decrypt for the duration of one signing operation, then zero the buffer."""
        key = self.decrypt(encrypted, chain, associated_data)
        try:
            yield key
        finally:
            key.wipe()


# ---------------------------------------------------------------------------
# Raw private key parsing
# ---------------------------------------------------------------------------


def _parse_evm_key(secret: str) -> bytes:
    value = secret.strip()
    if value.startswith(("0x", "0X")):
        value = value[2:]
    if len(value) != 64:
        raise InvalidPrivateKey("EVM private key must be 32 bytes of hex")
    try:
        raw = bytes.fromhex(value)
        Account.from_key(raw)
    except Exception as exc:
        raise InvalidPrivateKey() from exc
    return raw


def _parse_solana_key(secret: str) -> bytes:
    """Accept a base58 keypair/seed or a ``solana-keygen`` JSON byte array."""
    value = secret.strip()
    try:
        if value.startswith("["):
            raw = bytes(json.loads(value))
        else:
            raw = base58.b58decode(value)
    except (TypeError, ValueError) as exc:
        raise InvalidPrivateKey() from exc

    if len(raw) == 32:
        return raw
    if len(raw) == 64:
        seed, public = raw[:32], raw[32:]
        if bytes(Keypair.from_seed(seed).pubkey()) != public:
            raise InvalidPrivateKey("Keypair public half does not match its secret")
        return seed
    raise InvalidPrivateKey("Solana private key must be a 32-byte seed or 64-byte keypair")


def load_master_key(var_name: str = "ENCRYPTION_KEY") -> MasterKey:
    """Startup entry point; a :class:`ConfigError` here must stop the process."""
    key = MasterKey.from_env(var_name)
    logger.info("Master encryption key loaded from %s", var_name)
    return key
