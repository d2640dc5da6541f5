"""Workflow exceptions.

Every error carries a stable ``code`` for clients and the HTTP status the
API layer renders it with. Capability failures never appear here: they are
absorbed into fallbacks by the agent wrappers.
"""


class WorkflowError(Exception):
    """Base exception for workflow operations."""

    code = "workflow_error"
    status_code = 400
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# =============================================================================
# AUTHORIZATION
# =============================================================================


class AuthorizationError(WorkflowError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not authorized to perform this action."


class NotParticipantError(AuthorizationError):
    code = "not_participant"
    default_message = "You are not a participant in this issue."


class NotificationOwnershipError(AuthorizationError):
    code = "not_notification_owner"
    default_message = "This notification belongs to another user."


# =============================================================================
# NOT FOUND
# =============================================================================


class NotFoundError(WorkflowError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class UserNotFoundError(NotFoundError):
    code = "user_not_found"
    default_message = "User not found."


class IssueNotFoundError(NotFoundError):
    code = "issue_not_found"
    default_message = "Issue not found."


class ProposalNotFoundError(NotFoundError):
    code = "proposal_not_found"
    default_message = "Proposal not found."


class NotificationNotFoundError(NotFoundError):
    code = "notification_not_found"
    default_message = "Notification not found."


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = 422
    default_message = "Please check your input and try again."


class InvalidPartnerCodeError(ValidationError):
    code = "invalid_partner_code"
    default_message = "Invalid partner code. Please check and try again."


class EmptyMessageError(ValidationError):
    code = "empty_message"
    default_message = "Message cannot be empty."


class MessageTooLongError(ValidationError):
    code = "message_too_long"
    default_message = "Message is too long."


class AlreadyVotedError(ValidationError):
    code = "already_voted"
    default_message = "You have already voted on this proposal."


# =============================================================================
# BUSINESS-RULE CONFLICTS
# =============================================================================


class ConflictError(WorkflowError):
    code = "conflict"
    status_code = 409
    default_message = "Operation not allowed in the current state."


class AlreadyConnectedError(ConflictError):
    code = "already_connected"
    default_message = "You are already connected to a partner."


class PartnerUnavailableError(ConflictError):
    code = "partner_already_connected"
    default_message = "Partner is already connected to someone else."


class SelfConnectionError(ConflictError):
    code = "self_connection"
    default_message = "You cannot connect to your own partner code."


class NotConnectedError(ConflictError):
    code = "not_connected"
    default_message = "No connected partner found."


class ActiveIssueExistsError(ConflictError):
    code = "active_issue_exists"
    default_message = "Please resolve your current issue before starting a new one."


class IssueHaltedError(ConflictError):
    code = "issue_halted"
    default_message = "Issue has been halted due to safety concerns."


class IssueClosedError(ConflictError):
    code = "issue_closed"
    default_message = "Issue has already been resolved."


class ProposalPendingError(ConflictError):
    code = "proposal_pending"
    default_message = "Resolve the current proposal first."


class NoActiveProposalError(ConflictError):
    code = "no_active_proposal"
    default_message = "There is no proposal awaiting votes for this issue."


class StaleProposalError(ConflictError):
    code = "stale_proposal"
    default_message = "This proposal has been superseded by a newer version."


class MaxAttemptsReachedError(ConflictError):
    code = "max_attempts_reached"
    default_message = "Maximum proposal attempts reached."


class ConcurrencyError(ConflictError):
    code = "concurrent_modification"
    default_message = "The issue was modified by another request. Please retry."
