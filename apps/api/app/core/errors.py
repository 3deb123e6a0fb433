"""Domain errors shared by services and rendered by the API error handler."""


class FlowRunError(Exception):
    """Base exception for flow execution errors.

    Rendered as ``{"success": false, "error": {"code", "message"}}``.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FlowNotFoundError(FlowRunError):
    """Flow, run, step or link does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class FlowValidationError(FlowRunError):
    """Input or stored definition is not usable."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStateError(FlowRunError):
    """Operation not allowed in the current run/step state."""

    code = "INVALID_STATE"
    status_code = 409


class LinkExpiredError(FlowRunError):
    """Magic link is past its expiry."""

    code = "LINK_EXPIRED"
    status_code = 410
