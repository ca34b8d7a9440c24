"""
Domain errors.

Raised by the core and services; the HTTP layer maps them to status codes
in main.py. ProcessingError never escapes the event processor: it is
captured on the Event row instead.
"""


class PixelwatchError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PixelwatchError):
    """Malformed input rejected before it enters the pipeline."""
    status_code = 400


class NotFoundError(PixelwatchError):
    """Requested pixel/conversion/diagnostic is not visible in the workspace."""
    status_code = 404


class ProcessingError(PixelwatchError):
    """Delivery or validation failure for a single event."""
    status_code = 500


class AggregationError(PixelwatchError):
    """A recompute or analytics query failed."""
    status_code = 500


class DiagnosticCheckError(PixelwatchError):
    """One check's input could not be produced for one pixel."""
    status_code = 500
