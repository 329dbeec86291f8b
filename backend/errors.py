"""Error taxonomy shared by the service layer and the HTTP routes."""

from __future__ import annotations


class CsvShareError(Exception):
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class Unauthorized(CsvShareError):
    status_code = 401


class Forbidden(CsvShareError):
    status_code = 403


class NotFound(CsvShareError):
    status_code = 404


class InvalidInput(CsvShareError):
    status_code = 400


class InternalError(CsvShareError):
    status_code = 500
