class MalformedRecord(ValueError):
    """
    MalformedRecord is raised for a single usage record that cannot be
    turned into an entry, or whose timestamp falls outside the billing
    window it would have to join. It is never fatal to the stream.
    """

    def __init__(self, reason: "str", detail: "str") -> "None":
        super().__init__(f"{reason}: {detail}")
        # short, stable value usable as a metric label
        self.reason = reason
        self.detail = detail


class LogSourceError(OSError):
    """
    LogSourceError wraps failures to read the external usage log store.
    """


class InvariantViolation(RuntimeError):
    """
    raised in strict mode when internal state breaks an invariant,
    e.g. a block observed before its own start time.
    """
