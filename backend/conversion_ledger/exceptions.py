"""Domain exceptions.

Services raise these; routers translate them into HTTP responses.
"""


class ConversionLedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class InvalidSignature(ConversionLedgerError):
    """Webhook body could not be authenticated against the shared secret."""
    pass


class MalformedEvent(ConversionLedgerError):
    """Verified body is not a usable event (not JSON, no id, no type)."""
    pass


class CustomerLookupError(ConversionLedgerError):
    """The payment provider could not resolve a customer reference."""
    pass


class StripeAPIError(ConversionLedgerError):
    """A call to the Stripe REST API failed."""
    pass


class LedgerWriteError(ConversionLedgerError):
    """The ledger store rejected or failed a write for a reason other than a duplicate."""
    pass


class CampaignMappingError(ConversionLedgerError):
    """Base exception for campaign routing table mutations."""
    pass


class CampaignMappingNotFound(CampaignMappingError):
    pass


class CampaignMappingConflict(CampaignMappingError):
    pass


class MetaCAPIError(ConversionLedgerError):
    """Base exception for Meta CAPI errors."""
    pass
