"""Error types raised by the ledger, queries and auth layers.

Each carries the HTTP status the API answers with, so ``api.py`` needs a
single handler for all of them.
"""


class FinanceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(FinanceError):
    status_code = 400


class AuthenticationFailed(FinanceError):
    status_code = 401


class NotFound(FinanceError):
    status_code = 404


class Conflict(FinanceError):
    status_code = 409


class StorageFailure(FinanceError):
    status_code = 500
