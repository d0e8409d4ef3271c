"""Protocol interfaces for the lending risk engine."""
from .borrower_source import BorrowerSource
from .funds import FundsSource
from .market_source import MarketSource
from .notifier import Notifier
from .price_oracle import PriceOracle
from .settlement import SettlementExecutor

__all__ = [
    "BorrowerSource",
    "FundsSource",
    "MarketSource",
    "Notifier",
    "PriceOracle",
    "SettlementExecutor",
]
