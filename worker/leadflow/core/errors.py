"""Error taxonomy shared by the pipeline stages."""


class ProviderError(RuntimeError):
    """Raised when the place provider rejects a request or returns a bad status."""


class ValidationError(ProviderError):
    """Raised when a provider response does not match the expected schema."""


class EnrichmentError(RuntimeError):
    """Raised when deriving signals for a candidate fails."""


class PersistenceError(RuntimeError):
    """Raised when the store cannot persist scoring output."""
