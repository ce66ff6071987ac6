"""
Error taxonomy for the bridge.

Store errors bubble up to the reconciliation engine, which is the only place
that decides whether a failure is retried. Lookups that miss return None
instead of raising.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ValidationError(BridgeError):
    """Malformed identifiers or missing fields. Rejected before any write."""


class DecodeError(ValidationError):
    """A payload or stored row could not be turned into a typed entity."""

    def __init__(self, source: str, field: str, reason: str):
        self.source = source
        self.field = field
        self.reason = reason
        super().__init__(f"{source}: invalid {field}: {reason}")


class ConflictError(BridgeError):
    """A uniqueness conflict that re-reading could not resolve.

    Raised when a mirror message is already mapped to a different local
    message than the one being written.
    """


class InvalidTransitionError(BridgeError):
    """A relation status change not allowed by the sync state machine."""

    def __init__(self, relation_id: int, current, target):
        self.relation_id = relation_id
        self.current = current
        self.target = target
        super().__init__(f"relation {relation_id}: cannot move from {current.value} to {target.value}")


class ExternalError(BridgeError):
    """A call to an external collaborator failed.

    ``permanent`` errors (bad credentials, forbidden) are recorded but never
    retried automatically.
    """

    permanent = False


class MirrorError(ExternalError):
    """Mirror system call failed or timed out."""


class MirrorAuthError(MirrorError):
    """Mirror system rejected our credentials."""

    permanent = True


class DeliveryError(ExternalError):
    """Sending through the session's device layer failed."""


class PermanentDeliveryError(DeliveryError):
    """The device layer refused the message for good (e.g. session logged out)."""

    permanent = True
