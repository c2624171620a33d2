"""Pending swap detection: decoding, evaluation and the candidate pipeline."""
from .opportunity_models import Opportunity, PendingSwapIntent, RawTransaction
from .swap_decoder import ROUTER_FUNCTIONS, SwapDecoder, SwapDecoderConfig
from .opportunity_evaluator import EvaluatorConfig, OpportunityEvaluator
from .mempool_ingestor import IngestorConfig, MempoolIngestor

__all__ = [
    "Opportunity",
    "PendingSwapIntent",
    "RawTransaction",
    "ROUTER_FUNCTIONS",
    "SwapDecoder",
    "SwapDecoderConfig",
    "EvaluatorConfig",
    "OpportunityEvaluator",
    "IngestorConfig",
    "MempoolIngestor",
]
