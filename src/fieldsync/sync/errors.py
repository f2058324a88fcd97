"""Engine-level errors. Per-entity remote failures never surface as these."""


class SyncError(RuntimeError):
    """Base class for sync engine precondition failures."""


class CredentialUnavailableError(SyncError):
    """No valid access token from the identity provider or the token cache."""


class OfflineError(SyncError):
    """A sync was explicitly requested while the device is offline."""
