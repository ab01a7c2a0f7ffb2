"""
Swap coordination for swapper.

Proof oracle, lifecycle coordinator and background monitor.
"""

from .oracle import ChainProofOracle, InclusionProof
from .coordinator import SwapCoordinator, SwapParams, InitiateResult, build_coordinator
from .monitor import SwapMonitor

__all__ = [
    "ChainProofOracle",
    "InclusionProof",
    "SwapCoordinator",
    "SwapParams",
    "InitiateResult",
    "build_coordinator",
    "SwapMonitor",
]
