"""Errors surfaced by the lending services.

Every error carries a short machine ``code`` so the HTTP layer can hand the
caller a tagged result instead of a bare message.
"""


class LendingError(Exception):
    code = "lending_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(LendingError):
    code = "not_found"
    status_code = 404


class InvalidTransition(LendingError):
    code = "invalid_transition"
    status_code = 409


class UpstreamFailure(LendingError):
    code = "upstream_failure"
    status_code = 502


class ValidationFailure(LendingError):
    code = "validation_failure"
    status_code = 422
