class ResolverError(Exception):
    """Base class for failures raised while resolving an identity."""


class ValidationError(ResolverError):
    """Neither an email nor a phone number was submitted."""


class StoreError(ResolverError):
    """The contact store failed to read or write."""


class DataIntegrityViolation(StoreError):
    """Stored linkage breaks the primary/secondary invariants."""

    def __init__(self, contact_id: int, reason: str):
        super().__init__(f"contact {contact_id}: {reason}")
        self.contact_id = contact_id
        self.reason = reason
