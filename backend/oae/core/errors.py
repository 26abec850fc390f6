"""Error taxonomy shared by the engine, the HTTP surface and the CLI.

Every error carries a stable ``code`` suitable for localisation, the CLI exit
code and the HTTP status it maps to.
"""


class OAEError(Exception):
    code = "internal"
    exit_code = 1
    http_status = 500

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidInput(OAEError):
    code = "invalid_input"
    exit_code = 2
    http_status = 400


class InvalidAddress(InvalidInput):
    code = "invalid_address"


class NotFound(OAEError):
    code = "not_found"
    exit_code = 2
    http_status = 404


class Conflict(OAEError):
    code = "conflict"
    exit_code = 2
    http_status = 409


class PolicyViolation(OAEError):
    code = "policy_violation"
    exit_code = 2
    http_status = 422


class Unauthorized(OAEError):
    code = "unauthorized"
    exit_code = 3
    http_status = 401


class Forbidden(OAEError):
    code = "forbidden"
    exit_code = 3
    http_status = 403


class BadPin(OAEError):
    code = "bad_pin"
    exit_code = 3
    http_status = 403


class Locked(OAEError):
    code = "locked"
    exit_code = 3
    http_status = 423


class StorageUnavailable(OAEError):
    code = "storage_unavailable"
    exit_code = 4
    http_status = 503


class AdapterUnavailable(OAEError):
    """Transient chain/signer/sink failure; safe to retry."""
    code = "adapter_unavailable"
    exit_code = 5
    http_status = 502


class AdapterRejected(OAEError):
    """The remote side refused the request (bad signature, insufficient funds...)."""
    code = "adapter_rejected"
    exit_code = 5
    http_status = 502


class Internal(OAEError):
    pass


RETRYABLE = (AdapterUnavailable, StorageUnavailable)
