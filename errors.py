"""
Error taxonomy for edge DHCP configuration
Validation errors are raised before any external call is made
"""


class EdgeDHCPError(Exception):
    """Base class for everything this tool raises on purpose"""


class ConfigError(EdgeDHCPError):
    """Config file or desired-state file is unusable"""


class ValidationError(EdgeDHCPError):
    """Local validation failure; guaranteed side-effect free"""


class InvalidCidr(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class InvalidRangeFormat(ValidationError):
    pass


class RangeInverted(ValidationError):
    pass


class RangeOutsideCidr(ValidationError):
    pass


class OverlappingRanges(ValidationError):
    pass


class GatewayOutsideCidr(ValidationError):
    pass


class GatewayInsidePool(ValidationError):
    pass


class NoFreeInterfaceSlot(ValidationError):
    pass


class GatewayBusy(EdgeDHCPError):
    """Another reconciliation pass holds the gateway"""


class ExternalServiceError(EdgeDHCPError):
    """Failure reported by the gateway-management API"""

    NOT_FOUND = "NotFound"
    UNAVAILABLE = "Unavailable"
    CONFLICT = "Conflict"
    INVALID = "Invalid"

    def __init__(
        self,
        message: str,
        kind: str = UNAVAILABLE,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.detail = detail
