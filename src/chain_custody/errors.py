"""Error taxonomy for the custody core.

Every error surfaced to callers derives from :class:`CustodyError` and carries
a stable machine-readable ``code``.  The transient endpoint errors at the
bottom of this module are internal to the RPC failover manager: they are
recovered by retrying on another endpoint and only ever reach a caller folded
into :class:`ProviderUnavailable` or :class:`RateLimited`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from chain_custody.storage.models import TransactionRecord


class CustodyError(Exception):
    """Base class for every terminal error the core surfaces."""

    code: str = "INTERNAL_ERROR"
    field: Optional[str] = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    def to_dict(self) -> dict[str, Any]:
        """Serialise into the error body the API layer returns."""
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.field:
            detail["field"] = self.field
        return {"error": detail}


class ConfigError(CustodyError):
    """Startup configuration is missing or malformed.  Fatal."""

    code = "CONFIG_ERROR"


class InvalidAddress(CustodyError):
    code = "INVALID_ADDRESS"
    field = "address"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid address format"


class InvalidMnemonic(CustodyError):
    code = "INVALID_MNEMONIC"
    field = "mnemonic"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid mnemonic phrase"


class InvalidPrivateKey(CustodyError):
    code = "INVALID_PRIVATE_KEY"
    field = "private_key"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid private key format"


class InvalidAmount(CustodyError):
    code = "INVALID_AMOUNT"
    field = "amount"

    @classmethod
    def default_message(cls) -> str:
        return "Amount must be a positive integer in the smallest unit"


class InvalidDerivationIndex(CustodyError):
    code = "INVALID_DERIVATION_INDEX"
    field = "derivation_index"

    @classmethod
    def default_message(cls) -> str:
        return "Derivation index must be between 0 and 2**31 - 1"


class UnsupportedChain(CustodyError):
    code = "UNSUPPORTED_CHAIN"
    field = "chain"


class UnsupportedToken(CustodyError):
    code = "UNSUPPORTED_TOKEN"
    field = "token"


class InsufficientFunds(CustodyError):
    code = "INSUFFICIENT_FUNDS"

    @classmethod
    def default_message(cls) -> str:
        return "Insufficient balance for transaction"


class WalletNotFound(CustodyError):
    code = "WALLET_NOT_FOUND"

    @classmethod
    def default_message(cls) -> str:
        return "Wallet not found"


class TransactionNotFound(CustodyError):
    code = "TRANSACTION_NOT_FOUND"

    @classmethod
    def default_message(cls) -> str:
        return "Transaction not found"


class DecryptionFailed(CustodyError):
    """Ciphertext was tampered with or the master key does not match."""

    code = "DECRYPTION_FAILED"

    @classmethod
    def default_message(cls) -> str:
        return "Stored key material could not be decrypted"


class ProviderUnavailable(CustodyError):
    """Every endpoint in a chain's pool failed or is excluded."""

    code = "PROVIDER_UNAVAILABLE"


class RateLimited(CustodyError):
    """Every endpoint tried answered with HTTP 429."""

    code = "RATE_LIMITED"


class TransactionRejected(CustodyError):
    """A node definitively refused the transaction."""

    code = "TRANSACTION_REJECTED"


class AmbiguousSubmission(CustodyError):
    """Submission outcome could not be determined within the poll budget.

    The record is surfaced so the caller can reconcile it later instead of
    resending and risking a double spend.
    """

    code = "AMBIGUOUS_SUBMISSION"

    def __init__(self, message: str, record: "TransactionRecord") -> None:
        super().__init__(message)
        self.record = record

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"]["tx_hash"] = self.record.tx_hash
        return body


# ---------------------------------------------------------------------------
# Transport-level errors (internal to the failover manager)
# ---------------------------------------------------------------------------


class TransientRpcError(Exception):
    """An endpoint failed in a way another endpoint may not."""

    def __init__(self, url: str, detail: str = "") -> None:
        super().__init__(f"{url}: {detail}" if detail else url)
        self.url = url
        self.detail = detail


class EndpointTimeout(TransientRpcError):
    """No answer arrived; the request may or may not have been delivered."""


class EndpointUnreachable(TransientRpcError):
    """The connection could not be established; nothing was delivered."""


class EndpointServerError(TransientRpcError):
    """The endpoint answered with a non-2xx HTTP status."""

    def __init__(self, url: str, status_code: int, detail: str = "") -> None:
        super().__init__(url, detail or f"HTTP {status_code}")
        self.status_code = status_code


class EndpointRateLimited(EndpointServerError):
    def __init__(self, url: str, detail: str = "") -> None:
        super().__init__(url, 429, detail or "HTTP 429 Too Many Requests")


class MalformedResponse(TransientRpcError):
    """The body was not a well-formed JSON-RPC response."""


class SubmissionOutcomeUnknown(Exception):
    """A non-idempotent call lost its answer mid-flight."""

    def __init__(self, chain: str, url: str, detail: str = "") -> None:
        super().__init__(f"{chain} submission via {url} has unknown outcome: {detail}")
        self.chain = chain
        self.url = url
        self.detail = detail


class JsonRpcError(Exception):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None, url: str = "") -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data
        self.url = url
