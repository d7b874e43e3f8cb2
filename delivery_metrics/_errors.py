"""Exception hierarchy for the delivery metrics engine.

Only acquisition and initialization failures are fatal to a session; every
other failure is caught where it happens and degrades the affected fields.
"""


class DeliveryMetricsError(Exception):
    """Base class for all errors raised by this package."""


class AlreadyRunningError(DeliveryMetricsError):
    """Raised when start() is called on an aggregator that is not idle."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Metrics aggregator already running (state={state})")
        self.state = state


class AcquisitionError(DeliveryMetricsError):
    """Camera or microphone could not be acquired (permission, missing device)."""


class InitializationTimeoutError(DeliveryMetricsError, TimeoutError):
    """A model or worker did not become ready within the configured bound."""

    def __init__(self, component: str, timeout_s: float) -> None:
        super().__init__(f"{component} initialization exceeded {timeout_s:.1f}s")
        self.component = component
        self.timeout_s = timeout_s


class SpeechRecognitionError(DeliveryMetricsError):
    """Error reported by a speech recognition source.

    Attributes:
        code: Short machine-readable error code, e.g. 'no-speech', 'network'.
    """

    BENIGN_CODES = frozenset({"no-speech"})

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code

    @property
    def benign(self) -> bool:
        """True for conditions expected during normal pauses in speech."""
        return self.code in self.BENIGN_CODES
