class IndexerError(Exception):
    """Base class for indexer failures."""


class ConfigError(IndexerError):
    pass


class DecodeError(IndexerError):
    """A single log could not be turned into an EventRecord."""


class SourceGapError(IndexerError):
    """The source cannot prove it delivered a contiguous block range."""

    def __init__(self, from_block: int, to_block: int, reason: str):
        super().__init__(f"cannot deliver blocks {from_block}-{to_block}: {reason}")
        self.from_block = from_block
        self.to_block = to_block
        self.reason = reason


class ResourceExhausted(IndexerError):
    """A bounded buffer (dedup set, pending events) overflowed."""
