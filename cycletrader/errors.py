"""Exception taxonomy for the trading cycle."""


class TradingError(Exception):
    """Base class for errors raised by the trading cycle."""


class InsufficientBalanceError(TradingError):
    """Balance cannot cover the order even after top-up attempts."""

    def __init__(self, message: str, *, asset: str = "", required=None, available=None):
        super().__init__(message)
        self.asset = asset
        self.required = required
        self.available = available


class OrderPlacementError(TradingError):
    """The exchange rejected (or never acknowledged) an order."""


class SupervisionError(TradingError):
    """Order supervision gave up before reaching a terminal order state."""


class IllegalTransition(TradingError):
    """A state machine was asked to move backwards or leave a terminal state."""
