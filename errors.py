"""Errors raised by the dosing core and mapped to JSON responses in main.py."""


class DosingError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DosingError):
    status_code = 404


class ValidationFailure(DosingError, ValueError):
    """Rejected input. Also a ValueError so pydantic validators report it as a field error."""

    status_code = 400
