"""
External collaborators: the REST backend and feedback generation.
"""

from bewerbungstrainer.services.backend import BackendClient
from bewerbungstrainer.services.feedback import FeedbackGenerator, OllamaError, OllamaFeedbackGenerator
from bewerbungstrainer.services.retry import retry_audio_download, retry_with_backoff

__all__ = [
    "BackendClient",
    "FeedbackGenerator",
    "OllamaError",
    "OllamaFeedbackGenerator",
    "retry_audio_download",
    "retry_with_backoff",
]
