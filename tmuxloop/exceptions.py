"""
Exception hierarchy for tmuxloop.

All exceptions inherit from TmuxLoopError for easy catching.
"""


class TmuxLoopError(Exception):
    """Base exception for tmuxloop.

    Callers can catch any tmuxloop error with a single except.
    """
    pass


class ConfigurationError(TmuxLoopError):
    """Error in configuration.

    Raised when:
    - Config file not found or not valid YAML
    - Config validation fails (one error listing every problem)
    - A schedule bitmap does not have exactly 1440 entries
    """
    pass


class DeliveryError(TmuxLoopError):
    """Message delivery to a pane failed.

    Raised when:
    - The tmux session does not exist
    - load-buffer / paste-buffer / send-keys exits non-zero
    - tmux is not installed or times out
    """
    pass


class CaptureError(TmuxLoopError):
    """Snapshot capture failed.

    Capture failures are normally reported as None by the tmux layer;
    this is only raised by callers that need a hard failure.
    """
    pass


class ControlError(TmuxLoopError):
    """Control socket error.

    Raised when:
    - The daemon is not running (connection refused / no socket)
    - Another daemon already owns the socket
    - The daemon returns a malformed response
    """
    pass
