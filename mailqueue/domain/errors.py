class EmailPipelineError(Exception):
    """Base exception for email pipeline errors."""
    pass

class ConfigurationError(EmailPipelineError):
    pass

class BrokerUnavailableError(EmailPipelineError):
    """Connection or channel level broker failure; nothing was queued."""
    pass

class InvalidEmailJobError(EmailPipelineError):
    pass

class ScheduledEmailError(EmailPipelineError):
    pass

class ScheduledEmailNotFoundError(ScheduledEmailError):
    def __init__(self, email_id):
        super().__init__(f"Scheduled email {email_id} not found")

class InvalidScheduledEmailStateError(ScheduledEmailError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition scheduled email from {current_status} to {target_status}")
