class MessageValidationError(ValueError):
    """Message content rejected before any backend call."""


class ConversationNotFound(LookupError):
    pass


class NotAParticipant(PermissionError):
    pass


class ConversationLoadError(RuntimeError):
    """Aggregation failed; callers show a generic 'failed to load' notice."""


class PaymentError(RuntimeError):

    def __init__(self, message: str, code: str | None = None, upstream: bool = False) -> None:
        super().__init__(message)
        self.code = code
        # raised by the payment processor rather than by our own checks
        self.upstream = upstream


class PaymentsNotConfigured(PaymentError):
    pass


class ProfileNotFound(LookupError):
    pass
