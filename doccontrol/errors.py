"""Errors raised by the document workflow.

Every error carries a stable ``code`` for API clients and the HTTP status the
web layer should answer with.  Nothing in the workflow swallows these; only the
post-commit activity/notification hooks are allowed to fail quietly.
"""

from __future__ import annotations


class WorkflowError(Exception):
    code = "workflow_error"
    status_code = 400

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class NotFound(WorkflowError):
    code = "not_found"
    status_code = 404


class Forbidden(WorkflowError):
    code = "forbidden"
    status_code = 403


class InvalidState(WorkflowError):
    code = "invalid_state"
    status_code = 409


class OutOfOrder(WorkflowError):
    code = "out_of_order"
    status_code = 409


class CreatorNotSigned(OutOfOrder, InvalidState):
    """The creator's "prepared by" signature is missing."""

    code = "creator_not_signed"
    status_code = 409


class AlreadySigned(WorkflowError):
    code = "already_signed"
    status_code = 409


class AlreadyFinalized(WorkflowError):
    code = "already_finalized"
    status_code = 409


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = 400


class SignatureError(ValidationError):
    code = "invalid_signature"


class NoSavedSignature(SignatureError):
    code = "no_saved_signature"


class DependencyFailure(WorkflowError):
    code = "dependency_failure"
    status_code = 502


__all__ = [
    "WorkflowError",
    "NotFound",
    "Forbidden",
    "InvalidState",
    "OutOfOrder",
    "CreatorNotSigned",
    "AlreadySigned",
    "AlreadyFinalized",
    "ValidationError",
    "SignatureError",
    "NoSavedSignature",
    "DependencyFailure",
]
