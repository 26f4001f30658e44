"""Exceptions raised by the sampling pipeline."""


class SysgraphError(Exception):
    """Base class for sysgraph errors."""

    pass


class MetricsUnavailable(SysgraphError):
    """Raised when the metrics source cannot produce a value this round."""

    pass


class OutOfOrderSample(SysgraphError):
    """Raised when a sample is older than the newest one already buffered."""

    def __init__(self, series: str, timestamp: float, last: float) -> None:
        super().__init__(
            f"{series}: sample at {timestamp:.3f} is older than last sample at {last:.3f}"
        )
        self.series = series
        self.timestamp = timestamp
        self.last = last


class LockContentionTimeout(SysgraphError):
    """Raised when a buffer lock cannot be taken within the bounded wait."""

    pass


class ConfigurationError(SysgraphError):
    """Raised at startup when the configuration is unusable."""

    pass
