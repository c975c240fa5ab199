from .consumer import EmailQueueWorker
from .provider import OutgoingEmail, ResendProvider, TransmissionProvider, TransmissionResult
from .runner import WorkerRunner

__all__ = [
    "EmailQueueWorker",
    "OutgoingEmail",
    "ResendProvider",
    "TransmissionProvider",
    "TransmissionResult",
    "WorkerRunner",
]
