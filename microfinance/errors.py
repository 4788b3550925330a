"""
Error Kinds

Every core operation fails with one of these. The API maps them to HTTP
status codes; nothing else needs to know about HTTP.
"""


class MicrofinanceError(Exception):
    """Base class for all domain errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MicrofinanceError, ValueError):
    """Malformed or out-of-range input"""
    status_code = 400


class NotFoundError(MicrofinanceError, LookupError):
    """Referenced entity does not exist"""
    status_code = 404


class AuthError(MicrofinanceError):
    """Missing or invalid credentials (401) or insufficient role (403)"""
    status_code = 401

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class ConflictError(MicrofinanceError):
    """Duplicate unique field or a state that forbids the operation"""
    status_code = 409


class InternalError(MicrofinanceError):
    """Storage or collaborator failure"""
    status_code = 500
