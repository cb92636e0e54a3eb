"""Error taxonomy surfaced by the resolver, number generator and approval query."""


class RpcError(Exception):
    """Base class for every error returned to RPC callers."""

    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def error_type(self) -> str:
        return self.__class__.__name__


class ValidationError(RpcError):
    """Request failed syntactic validation; never retried."""


class InvalidIdentifier(ValidationError):
    pass


class InvalidSequenceName(ValidationError):
    pass


class InvalidCount(ValidationError):
    pass


class InvalidFormatOptions(ValidationError):
    pass


class InvalidCursor(ValidationError):
    pass


class InvalidDiagnoses(ValidationError):
    pass


class InvalidInitialValue(ValidationError):
    pass


class InvalidRequest(ValidationError):
    """Arguments are individually valid but do not make sense together."""


class ResourceNotFound(RpcError):
    pass


class NotLinked(RpcError):
    """The resource exists but carries no episode back-reference."""


class EpisodeNotFound(RpcError):
    pass


class Forbidden(RpcError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidStatusTransition(RpcError):
    pass


class ResourceConflict(RpcError):
    """A resource with the same id already exists."""


class StoreUnavailable(RpcError):
    """Transient storage failure.  Nothing was committed by the failed call."""

    retryable = True
