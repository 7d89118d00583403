class CommissionsError(Exception):
    pass


class SignatureVerificationFailed(CommissionsError):
    pass


class MalformedEventError(CommissionsError):
    pass


class WebhookNotConfiguredError(CommissionsError):
    pass


class TransientStoreError(CommissionsError):
    """Store failures the webhook sender should retry."""


class TransactionConflictError(TransientStoreError):
    pass


class TransactionAbortedError(TransientStoreError):
    pass


class InvalidStateTransitionError(CommissionsError):
    pass


class LedgerEntryNotFoundError(CommissionsError):
    pass


class PartnerNotFoundError(CommissionsError):
    pass


class InvalidCommissionRateError(CommissionsError):
    pass
