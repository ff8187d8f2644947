from typing import Optional


class LedgerServiceError(Exception):
    """Base error for ledger, grant and gateway rejections.

    Every subclass carries a machine-readable ``kind`` and the HTTP status
    the API layer answers with.
    """

    kind = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, kind: Optional[str] = None):
        if kind:
            self.kind = kind
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class Unauthenticated(LedgerServiceError):
    kind = "UNAUTHENTICATED"
    status_code = 401


class Forbidden(LedgerServiceError):
    kind = "FORBIDDEN"
    status_code = 403


class InsufficientCredits(LedgerServiceError):
    kind = "INSUFFICIENT_CREDITS"
    status_code = 403

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")


class FeatureDisabled(LedgerServiceError):
    kind = "FEATURE_DISABLED"
    status_code = 403


class AccountNotFound(LedgerServiceError):
    kind = "ACCOUNT_NOT_FOUND"
    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AlreadyClaimed(LedgerServiceError):
    kind = "ALREADY_CLAIMED"
    status_code = 409


class InvalidCode(LedgerServiceError):
    kind = "INVALID_CODE"
    status_code = 404


class SelfReferral(LedgerServiceError):
    kind = "SELF_REFERRAL"
    status_code = 400


class AlreadyReferred(LedgerServiceError):
    kind = "ALREADY_REFERRED"
    status_code = 409


class DuplicateRequest(LedgerServiceError):
    kind = "DUPLICATE_REQUEST"
    status_code = 409


class InvalidAmount(LedgerServiceError):
    kind = "INVALID_AMOUNT"
    status_code = 400


class UnknownPackage(LedgerServiceError):
    kind = "UNKNOWN_PACKAGE"
    status_code = 404


class InvalidSignature(LedgerServiceError):
    kind = "INVALID_SIGNATURE"
    status_code = 400


class ProviderFailure(LedgerServiceError):
    """The provider call failed after the deduction had already committed."""

    kind = "PROVIDER_FAILURE"
    status_code = 500

    def __init__(self, message: str, charged: int = 0, entry_id: Optional[str] = None):
        self.charged = charged
        self.entry_id = entry_id
        super().__init__(message)


class ConfigError(LedgerServiceError):
    kind = "CONFIG_ERROR"
    status_code = 500
