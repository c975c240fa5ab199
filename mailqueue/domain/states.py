from enum import StrEnum, auto

class ScheduledEmailStatus(StrEnum):
    PENDING = auto()     # Waiting for scheduled_time
    PROCESSING = auto()  # Claimed by a scheduler pass
    SENT = auto()        # Handed to the producer successfully
    FAILED = auto()      # Attempts exhausted or expired

class EmailType(StrEnum):
    GENERAL = auto()
    NEWSLETTER = auto()
    CONTACT_US = auto()
    INQUIRY_REPLY = auto()
    TEST = auto()

class ResultCode(StrEnum):
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    QUEUE_ERROR = "QUEUE_ERROR"

class DelayReason(StrEnum):
    SCHEDULED = auto()
    QUOTA = auto()
    RETRY = auto()

class WorkerOutcome(StrEnum):
    SENT = auto()
    EXPIRED = auto()
    DISCARDED = auto()
    DELAYED = auto()
    DEFERRED_QUOTA = auto()
    RETRY_SCHEDULED = auto()
    DEAD_LETTERED = auto()
    REQUEUED = auto()
