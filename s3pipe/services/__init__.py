from .pipe_service import FanOutError, PipeDestination, PipeService

__all__ = [
    "FanOutError",
    "PipeDestination",
    "PipeService",
]
