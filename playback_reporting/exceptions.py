class PlaybackReportingError(Exception):
    """Base class for playback reporting failures."""


class TrackerProcessingError(PlaybackReportingError):
    """A session tracker failed while handling an event and was abandoned."""

    def __init__(self, key: str, message: str):
        super().__init__(f"Error saving playback state for {key}: {message}")
        self.key = key


class StoreUnavailableError(PlaybackReportingError, RuntimeError):
    """The record store could not complete an operation."""


class ReportParameterError(PlaybackReportingError, ValueError):
    """A report was requested with invalid parameters."""
