class ksefError(Exception):
    """Exception for KSeF API errors."""
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class CertificateUnavailable(ksefError):
    pass


class ChallengeUnavailable(ksefError):
    pass


class EncryptionFailed(ksefError):
    pass


class AuthSubmitRejected(ksefError):
    pass


class AuthStatusTimeout(ksefError):
    pass


class AuthStatusFailed(ksefError):
    pass


class RedemptionFailed(ksefError):
    pass


class Unauthorized(ksefError):
    """HTTP 401 from an authenticated call; the current session must be dropped."""
    pass


class RemoteUnavailable(ksefError):
    """Network or transport failure, no HTTP response was received."""
    pass


class PayloadUnrecognized(ksefError):
    pass
