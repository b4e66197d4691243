"""
Error taxonomy shared by the state machine, dispatcher and HTTP layer.
Every external failure is wrapped into one of these before it leaves a service.
"""


class RelayError(Exception):
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(RelayError):
    """Illegal transition or bad input. No mutation has been applied."""
    status_code = 400
    code = 'VALIDATION_ERROR'

    def __init__(self, message: str, current_status=None, details=None):
        super().__init__(message, details)
        self.current_status = current_status
        if current_status is not None:
            # Losing a status race is a conflict, not a malformed request
            self.status_code = 409

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.current_status is not None:
            body["current_status"] = self.current_status
        return body


class NotFoundError(RelayError):
    status_code = 404
    code = 'NOT_FOUND'


class AuthorizationError(RelayError):
    status_code = 403
    code = 'FORBIDDEN'


class ExternalVerificationFailure(RelayError):
    status_code = 402
    code = 'PAYMENT_VERIFICATION_FAILED'


class WebhookDeliveryFailure(RelayError):
    status_code = 502
    code = 'WEBHOOK_DELIVERY_FAILED'

    def __init__(self, message: str = 'Webhook delivery failed', attempts: int = 0,
                 status_code_received=None, details=None):
        super().__init__(message, details)
        self.attempts = attempts
        self.status_code_received = status_code_received

    def to_payload(self) -> dict:
        """Error payload stored on a job that failed because of this delivery."""
        payload = {"error": self.message, "details": self.details, "attempts": self.attempts}
        if self.status_code_received is not None:
            payload["status_code"] = self.status_code_received
        return payload


class ProcessingError(RelayError):
    status_code = 502
    code = 'PROCESSING_FAILED'


class ProcessingTimeout(ProcessingError):
    status_code = 504
    code = 'PROCESSING_TIMEOUT'
