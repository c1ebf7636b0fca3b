class DonationError(Exception):
    """Base for every error the donation core raises on purpose."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(DonationError):
    status_code = 500


class ValidationError(DonationError):
    status_code = 400


class PermissionDeniedError(DonationError):
    status_code = 403


class NotFoundError(DonationError):
    status_code = 404


class PreconditionFailedError(DonationError):
    status_code = 409

    def __init__(self, message: str, expected: str):
        super().__init__(message)
        self.expected = expected


class UnrecognizedReferenceError(DonationError):
    status_code = 400

    def __init__(self, reference_id: str):
        super().__init__(f"Unrecognized payment reference: {reference_id}")
        self.reference_id = reference_id


class GatewayError(DonationError):
    """PayMongo rejected the call or did not answer in time."""

    status_code = 502

    def __init__(self, message: str = "Payment service is unavailable. Please try again.",
                 retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
