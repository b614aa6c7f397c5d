"""
Typed failures raised by the settlement core.

Every error carries an HTTP status and a stable machine code so the
FastAPI exception handler in ``main.py`` can render it without knowing
about individual services.
"""


class SettlementError(Exception):
    status_code = 400
    code = "settlement_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(SettlementError):
    code = "validation_error"


class CommissionNotConfigured(ValidationError):
    code = "commission_not_configured"


class NotFoundError(SettlementError):
    status_code = 404
    code = "not_found"


class InvalidSettlementStateError(SettlementError):
    status_code = 409
    code = "invalid_settlement_state"


class InvalidEscrowStateError(InvalidSettlementStateError):
    code = "invalid_escrow_state"


class InvalidOrderStateError(InvalidSettlementStateError):
    code = "invalid_order_state"


class InsufficientBalanceError(SettlementError):
    status_code = 409
    code = "insufficient_balance"


class ConcurrentModificationError(SettlementError):
    status_code = 409
    code = "concurrent_modification"


class DuplicateOperationError(SettlementError):
    # reported to callers as a success with a note
    status_code = 200
    code = "duplicate_operation"


class ExternalGatewayError(SettlementError):
    status_code = 502
    code = "external_gateway_error"


class AuditWriteError(SettlementError):
    status_code = 500
    code = "audit_write_error"


class ConfigurationError(SettlementError):
    status_code = 500
    code = "configuration_error"
