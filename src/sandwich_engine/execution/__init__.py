"""Bundle construction, submission and monitoring."""
from .models import (
    Bundle,
    BundleSimulation,
    BundleSubmission,
    ExecutionOutcome,
    ExecutionResult,
    ExecutionState,
    SignedTransaction,
)
from .builder_client import BuilderClient, BuilderConfig, create_builder_client
from .circuit_breaker import CircuitBreakerConfig, TokenCircuitBreaker
from .settlement import SettlementConfig, SettlementSigner, encode_backrun, encode_frontrun
from .coordinator import CoordinatorConfig, ExecutionCoordinator

__all__ = [
    "Bundle",
    "BundleSimulation",
    "BundleSubmission",
    "ExecutionOutcome",
    "ExecutionResult",
    "ExecutionState",
    "SignedTransaction",
    "BuilderClient",
    "BuilderConfig",
    "create_builder_client",
    "CircuitBreakerConfig",
    "TokenCircuitBreaker",
    "SettlementConfig",
    "SettlementSigner",
    "encode_backrun",
    "encode_frontrun",
    "CoordinatorConfig",
    "ExecutionCoordinator",
]
