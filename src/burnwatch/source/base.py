from typing import Any, Mapping, Protocol, Sequence


class UsageSource(Protocol):
    """
    UsageSource stands as a common protocol that all
    usage log sources must satisfy.

    Sources return the raw usage records that appeared since
    the previous call; the first call returns everything that
    is already there. Failing to reach the underlying store
    raises LogSourceError.
    """

    @property
    def name(self) -> "str": ...

    async def read_records(self) -> "Sequence[Mapping[str, Any]]": ...

    async def close(self) -> "None": ...
