"""
Error taxonomy for the gateway.

Every error carries a stable ``kind`` and ``category`` so callers can switch on
the class (or the kind string) instead of matching message text.
"""

from typing import ClassVar, Optional

DECRYPTION_FAILED_MESSAGE = "Decryption failed - incorrect password or corrupted data"


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    kind: ClassVar[str] = "gateway_error"
    category: ClassVar[str] = "internal"
    retriable: ClassVar[bool] = False
    default_message: ClassVar[str] = "Gateway error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def public_kind(self) -> str:
        return self.kind

    @property
    def public_message(self) -> str:
        return self.message


# Input / format errors

class InputError(GatewayError):
    category = "input"


class MalformedBundleError(InputError):
    kind = "malformed_bundle"
    default_message = "Invalid wallet import bundle"


class InvalidAddress(InputError):
    kind = "invalid_address"
    default_message = "Invalid Solana address"


class WeakPasswordError(InputError):
    kind = "weak_password"
    default_message = "Password must be at least 12 characters"


class MalformedTransactionError(InputError):
    kind = "malformed_transaction"
    default_message = "Transaction is malformed"


class InvalidRequestError(InputError):
    kind = "invalid_request"
    default_message = "Invalid request parameters"


class MarketNotFound(InputError):
    kind = "market_not_found"
    default_message = "Market not found"


# Authentication / integrity errors. The caller never learns which one happened.

class CryptoIntegrityError(GatewayError):
    category = "integrity"
    default_message = DECRYPTION_FAILED_MESSAGE

    @property
    def public_kind(self) -> str:
        return "decryption_failed"

    @property
    def public_message(self) -> str:
        return DECRYPTION_FAILED_MESSAGE


class AuthenticationFailure(CryptoIntegrityError):
    kind = "authentication_failure"


class KeyMismatchError(CryptoIntegrityError):
    kind = "key_mismatch"
    default_message = "Public key mismatch - data may be corrupted"


class MalformedKeyError(CryptoIntegrityError):
    kind = "malformed_key"
    default_message = "Decrypted key is invalid"


# Custody-state errors

class CustodyError(GatewayError):
    category = "custody"


class WalletAlreadyRegistered(CustodyError):
    kind = "wallet_already_registered"
    default_message = "This wallet is already registered to another user"


class NoWalletFound(CustodyError):
    kind = "no_wallet_found"
    default_message = "No wallet found. Use setup_wallet or import_wallet first."


class PasswordRequired(CustodyError):
    kind = "password_required"
    default_message = "Password required for imported wallet transactions"


class WalletExportNotAllowed(CustodyError):
    kind = "wallet_export_not_allowed"
    default_message = (
        "Cannot export imported wallet. Imported wallets are encrypted with your password; "
        "the server never has access to the private key."
    )


class InsufficientFundsError(CustodyError):
    kind = "insufficient_funds"
    default_message = "Insufficient balance for this transfer"


class UserNotFound(CustodyError):
    kind = "user_not_found"
    default_message = "User not found"


class UserAlreadyExists(CustodyError):
    kind = "user_already_exists"
    default_message = "User with this externalId already exists"


class CredentialError(GatewayError):
    kind = "unauthorized"
    category = "credential"
    default_message = "Invalid API key"


# Transient / external errors

class TransientError(GatewayError):
    category = "transient"
    retriable = True


class SettlementNetworkError(TransientError):
    kind = "settlement_network_error"
    default_message = "Settlement network request failed"


class RateLimitedError(TransientError):
    kind = "rate_limited"
    default_message = "Rate limited by upstream service"


class QuoteServiceError(TransientError):
    kind = "quote_service_error"
    default_message = "Quote service request failed"


class MarketDataError(TransientError):
    kind = "market_data_error"
    default_message = "Market data request failed"


class ConfirmationTimeout(TransientError):
    """
    Raised when a submitted transaction was not confirmed in time.

    The status is unknown, not failed: poll the signature instead of
    resubmitting the transfer.
    """

    kind = "confirmation_timeout"
    retriable = False
    default_message = "Timed out waiting for transaction confirmation; status unknown"

    def __init__(self, signature: str, message: Optional[str] = None):
        super().__init__(message or f"{self.default_message} (signature {signature})")
        self.signature = signature


class ExternalError(GatewayError):
    category = "external"


class TransactionFailedError(ExternalError):
    kind = "transaction_failed"
    default_message = "Transaction failed on-chain"

    def __init__(self, signature: str, err: object = None):
        super().__init__(f"Transaction {signature} failed: {err}")
        self.signature = signature
        self.err = err


class QuoteUnavailableError(ExternalError):
    kind = "quote_unavailable"
    default_message = "No transaction returned from quote - insufficient liquidity or invalid parameters"


# Configuration / symmetric-cipher errors

class ConfigurationError(GatewayError):
    kind = "configuration_error"
    category = "configuration"
    default_message = "Gateway is misconfigured"


class DecryptionError(GatewayError):
    kind = "decryption_error"
    category = "integrity"
    default_message = "Failed to decrypt value with the master key"
