# Engine error taxonomy
#
# Precondition errors (Conflict, NotFound, InvalidState) are raised
# synchronously to the caller before any background work starts.
# Failures inside backup/sync bodies are captured into the record's
# terminal state instead of being re-raised.


class VaultEngineError(Exception):
    """Base class for all engine errors. Carries a stable error code."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str = "", code: str = ""):
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ConflictError(VaultEngineError):
    """An exclusivity invariant would be violated (active backup/sync exists)."""

    code = "CONFLICT"


class NotFoundError(VaultEngineError):
    """Referenced record does not exist or does not belong to the caller."""

    code = "NOT_FOUND"


class InvalidStateError(VaultEngineError):
    """Operation is illegal for the record's current state."""

    code = "INVALID_STATE"


class CorruptPayloadError(VaultEngineError):
    """Ciphertext failed to decrypt or the plaintext checksum did not match."""

    code = "CORRUPT_PAYLOAD"


class DependencyFailureError(VaultEngineError):
    """A collaborator (item repository, device registry) call failed."""

    code = "DEPENDENCY_FAILURE"
