"""Exception types raised by the relay control plane."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay agent errors."""


class ProbeFailed(RelayError):
    """The source could not be probed (spawn error, bad exit, bad output or timeout)."""


class SwitchFailed(RelayError):
    """The replacement encoder did not start; the previous stream is still live."""


class SwitchSuperseded(RelayError):
    """A newer switch request or an abort signal cancelled this switch."""


class RecoveryError(RelayError):
    """Base class for recovery request errors."""


class UnknownRecoveryAction(RecoveryError):
    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"Unknown recovery action(s): {', '.join(self.names)}")


class RecoveryBusy(RecoveryError):
    """A recovery batch is already running."""
