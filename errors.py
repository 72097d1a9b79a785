"""
Domain errors

Workflows raise these; main.py turns them into {"message": ...} responses
carrying the matching HTTP status.
"""


class StoreError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None, status_code: int = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class Forbidden(StoreError):
    status_code = 403
    default_message = "Access denied"


class Unauthorized(StoreError):
    status_code = 401
    default_message = "Not authorized"


class InvalidCredentials(StoreError):
    status_code = 400
    default_message = "Invalid credentials"


class AccountLocked(StoreError):
    status_code = 403
    default_message = "Account is locked temporarily. Please try again after 15 minutes."


class InvalidOtp(StoreError):
    status_code = 400
    default_message = "Invalid OTP"


class OtpExpired(StoreError):
    status_code = 400
    default_message = "OTP has expired"


class NoPendingOtp(StoreError):
    status_code = 400
    default_message = "No OTP request found"


class EmptyCart(StoreError):
    status_code = 400
    default_message = "Cart is empty"


class InsufficientStock(StoreError):
    status_code = 400
    default_message = "Insufficient stock"


class ValidationFailed(StoreError):
    status_code = 400
    default_message = "Validation failed"


class InvalidState(StoreError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class Conflict(StoreError):
    status_code = 400
    default_message = "Already exists"


class MessagingFailed(StoreError):
    status_code = 500
    default_message = "Email could not be sent. Check server logs."


class TooManyRequests(StoreError):
    status_code = 429
    default_message = "Too many requests, please try again later"
