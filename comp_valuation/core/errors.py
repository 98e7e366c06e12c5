class ValuationError(Exception):
    """Base class for errors the engine lets escape to callers."""


class MutationError(ValuationError):
    """
    A write failed and the cached value was rolled back.
    `user_message` is safe to show to end users.
    """
    def __init__(self, key, user_message: str = "Update failed, please try again."):
        super().__init__(f"mutation failed for {key!r}")
        self.key = key
        self.user_message = user_message


class MutationInFlightError(ValuationError):
    """Another optimistic mutation for the same key has not settled yet."""
    def __init__(self, key):
        super().__init__(f"mutation already in flight for {key!r}")
        self.key = key
