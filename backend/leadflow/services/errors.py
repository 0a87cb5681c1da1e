"""Domain errors raised by the marketplace services.

Routes never catch these; ``leadflow.main`` renders them as JSON with the
status code carried on the class.
"""


class MarketplaceError(Exception):
    status_code = 400
    code = "marketplace_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PreconditionFailed(MarketplaceError):
    code = "precondition_failed"


class AlreadyAccepted(PreconditionFailed):
    status_code = 409
    code = "already_accepted"

    def __init__(self, message: str = "This lead has already been accepted") -> None:
        super().__init__(message)


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class TemplateNotFound(MarketplaceError):
    status_code = 500
    code = "template_not_found"


class ConfigurationError(MarketplaceError):
    status_code = 500
    code = "configuration_error"


class PaymentProviderError(MarketplaceError):
    status_code = 502
    code = "payment_provider_error"
