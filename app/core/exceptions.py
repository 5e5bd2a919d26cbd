"""
core/exceptions.py
Service-level errors. Each carries the HTTP status the API layer reports.
"""


class IssuanceError(Exception):
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(IssuanceError):
    status_code = 404


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")


class BatchNotFoundError(NotFoundError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch not found: {batch_id}")


class CertificateNotFoundError(NotFoundError):
    def __init__(self, certificate_id: str):
        super().__init__(f"Certificate not found: {certificate_id}")


class InvalidStateError(IssuanceError):
    status_code = 409


class BatchAlreadyProcessingError(InvalidStateError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} is already being processed")


class BatchAlreadyCompletedError(InvalidStateError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} has already been completed")


class BatchNotValidError(InvalidStateError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} did not pass validation and cannot be processed")


class CertificateStateError(InvalidStateError):
    """Operation not allowed from the certificate's current status."""


class NoMatchingCertificatesError(InvalidStateError):
    """A bulk operation found nothing to act on."""


class DuplicateProjectError(InvalidStateError):
    def __init__(self, name: str):
        super().__init__(f"A project named '{name}' already exists")


class ProjectNotReadyError(IssuanceError):
    status_code = 400

    def __init__(self, project_id: str):
        super().__init__(
            f"Project {project_id} must have a template PDF and QR coordinates before uploading a batch"
        )


class StampingError(Exception):
    """A single certificate could not be stamped."""
