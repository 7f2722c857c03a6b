"""Deterministic BIP-39 / BIP-44 key derivation for EVM and Solana."""

from __future__ import annotations

import hashlib
import hmac

from eth_account.hdaccount import key_from_seed
from mnemonic import Mnemonic

from chain_custody.errors import InvalidDerivationIndex, InvalidMnemonic
from chain_custody.wallet.chains import ChainFamily

# Standard BIP-44 templates.  ETH and BSC share coin type 60.
EVM_PATH_TEMPLATE = "m/44'/60'/0'/0/{index}"
# ed25519 only supports hardened derivation (SLIP-0010).
SOLANA_PATH_TEMPLATE = "m/44'/501'/{index}'/0'"

MNEMONIC_WORD_COUNTS = {12: 128, 24: 256}
MAX_DERIVATION_INDEX = 2**31 - 1

_HARDENED = 0x80000000
_WORDLIST = Mnemonic("english")


def generate_mnemonic(num_words: int = 24) -> str:
    """Draw fresh entropy from the OS CSPRNG and encode it as a BIP-39 phrase."""
    if num_words not in MNEMONIC_WORD_COUNTS:
        raise ValueError(f"Mnemonic length must be one of {sorted(MNEMONIC_WORD_COUNTS)}")
    return _WORDLIST.generate(strength=MNEMONIC_WORD_COUNTS[num_words])


def normalize_mnemonic(phrase: str) -> str:
    """Collapse whitespace and lower-case a phrase, then verify its checksum.

    Raises ``InvalidMnemonic`` for unknown words, a bad checksum or an
    unsupported word count.
    """
    words = phrase.strip().lower().split()
    if len(words) not in MNEMONIC_WORD_COUNTS:
        raise InvalidMnemonic(
            f"Mnemonic must have {sorted(MNEMONIC_WORD_COUNTS)} words, got {len(words)}"
        )
    normalized = " ".join(words)
    if not _WORDLIST.check(normalized):
        raise InvalidMnemonic()
    return normalized


def mnemonic_to_seed(phrase: str, passphrase: str = "") -> bytes:
    """BIP-39 seed (PBKDF2-HMAC-SHA512, 2048 rounds) for a validated phrase."""
    return Mnemonic.to_seed(normalize_mnemonic(phrase), passphrase)


def check_index(index: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int):
        raise InvalidDerivationIndex(f"Derivation index must be an integer, got {index!r}")
    if index < 0 or index > MAX_DERIVATION_INDEX:
        raise InvalidDerivationIndex()
    return index


def derivation_path(family: ChainFamily, index: int) -> str:
    check_index(index)
    if family is ChainFamily.EVM:
        return EVM_PATH_TEMPLATE.format(index=index)
    return SOLANA_PATH_TEMPLATE.format(index=index)


def _slip10_ed25519(seed: bytes, path: str) -> bytes:
    """SLIP-0010 ed25519 derivation; every segment is treated as hardened."""
    digest = hmac.new(b"ed25519 seed", seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]
    for segment in path.split("/")[1:]:
        if not segment:
            continue
        index = int(segment.rstrip("'")) | _HARDENED
        data = b"\x00" + key + index.to_bytes(4, "big")
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        key, chain_code = digest[:32], digest[32:]
    return key


def derive_private_key(seed: bytes, family: ChainFamily, index: int) -> bytes:
    """Derive the 32-byte private key (EVM) or ed25519 seed (Solana) at *index*."""
    path = derivation_path(family, index)
    if family is ChainFamily.EVM:
        return bytes(key_from_seed(seed, path))
    return _slip10_ed25519(seed, path)
