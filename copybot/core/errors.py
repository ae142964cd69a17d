class ExchangeError(Exception):
    """
    Base exception for all exchange-related errors.

    This acts as a catch-all for any anticipated error arising from
    interaction with the exchange (Mock or Real).
    """
    pass

class TransientError(ExchangeError):
    """
    Raised for failures that are expected to clear on their own.

    Rate limiting (429), server errors (5xx), connection resets and read
    timeouts. Read-only calls are retried on this class; order submission
    never is.
    """
    pass

class APIError(ExchangeError):
    """
    Raised when the external API returns an HTTP error that is not transient.

    Typically a bad request or an unexpected payload on the Polymarket side.
    """
    pass

class VenueFatalError(ExchangeError):
    """
    Raised when the venue refuses to trade for a reason that will not clear
    by itself.

    Further submissions for the affected source stay disabled until the
    source is re-enabled or its configuration is updated.
    """
    pass

class AuthError(VenueFatalError):
    """
    Raised when authentication fails.

    Likely causes: Invalid Private Key, Wrong Proxy Address, or
    Permission Denied on the API.
    """
    pass

class MarketClosedError(VenueFatalError):
    """Raised when an order targets a market that is closed or resolved."""
    pass

class InsufficientFundsError(ExchangeError):
    """
    Raised when the wallet lacks funds for a trade.

    This is checked against the internal tracking in MockExchange
    or the realized balance in PolymarketAdapter.
    """
    pass

class OrderError(ExchangeError):
    """
    Raised when an order placement fails.

    Examples: Invalid size, market not found, or generic exchange rejection.
    """
    pass

class AmbiguousOrderError(OrderError):
    """
    Raised when a submission times out or the connection drops after the
    order was sent.

    The order may or may not exist on the venue. It is logged as an unknown
    outcome and must be reconciled out of band; it is never resubmitted.
    """
    pass
