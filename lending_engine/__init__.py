"""Position accounting, health-ratio risk and liquidation scanning for a lending protocol."""
from .exceptions import LendingError
from .health import compute_health, simulate_health
from .ledger import Ledger
from .models import Asset, HealthRatio, HealthStatus, Market, Operation, OperationKind, Position
from .orchestrator import OperationOrchestrator
from .registry import MarketRegistry
from .scanner import LiquidationScanner, OpportunityBook

__version__ = "0.1.0"

__all__ = [
    "Asset",
    "HealthRatio",
    "HealthStatus",
    "LendingError",
    "Ledger",
    "LiquidationScanner",
    "Market",
    "MarketRegistry",
    "Operation",
    "OperationKind",
    "OperationOrchestrator",
    "OpportunityBook",
    "Position",
    "compute_health",
    "simulate_health",
]
