class PassGateError(Exception):
    """Base exception for the PassGate library."""
    pass


class CeremonyError(PassGateError):
    """
    Raised when a registration or authentication ceremony fails verification.
    The message is for logs only; callers surface a generic failure instead.
    """
    kind = "CeremonyError"


class ChallengeExpired(CeremonyError):
    """Raised when a challenge is unknown, already consumed or past its TTL."""
    kind = "ChallengeExpired"


class ChallengeMismatch(CeremonyError):
    """Raised when the signed challenge or its binding context does not match."""
    kind = "ChallengeMismatch"


class OriginMismatch(CeremonyError):
    kind = "OriginMismatch"


class RpIdMismatch(CeremonyError):
    kind = "RpIdMismatch"


class CredentialNotFound(CeremonyError):
    """Raised when a credential is unknown, disabled or not visible to the caller."""
    kind = "CredentialNotFound"


class CredentialAlreadyExists(CeremonyError):
    kind = "CredentialAlreadyExists"


class SignatureInvalid(CeremonyError):
    kind = "SignatureInvalid"


class CounterRegression(CeremonyError):
    """Raised when the authenticator's sign counter did not increase. Possible clone."""
    kind = "CounterRegression"


class MalformedClientData(CeremonyError):
    """Raised when the client response is structurally invalid."""
    kind = "MalformedClientData"


class UserVerificationRequired(CeremonyError):
    """Raised when the authenticator data flags do not satisfy the UP/UV policy."""
    kind = "UserVerificationRequired"


class NoCredentialsRegistered(PassGateError):
    """Raised when authentication is requested but no active passkey exists."""
    pass


class Unauthenticated(PassGateError):
    """Raised when registration is attempted without a logged in subject."""
    pass


class OperationForbiddenError(PassGateError):
    """Raised when a caller tries to touch a credential it does not own."""
    pass


class RateLimitError(PassGateError):
    """Raised by a ceremony guard when a request is throttled."""
    pass


class InsecureTransportError(PassGateError):
    """Raised when a ceremony is attempted over plain HTTP on a production host."""
    pass


class UserNotFoundError(PassGateError):
    """Raised when a user is not found."""
    pass


class UserAlreadyExistsError(PassGateError):
    """Raised when trying to create a user that already exists."""
    pass
