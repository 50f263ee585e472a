from verifier.sources.base import ChainVerifier, Evidence, VerifierRegistry
from verifier.sources.indexer import IndexerChainVerifier
from verifier.sources.registry import build_registry
from verifier.sources.static import StaticChainVerifier

__all__ = [
    "ChainVerifier",
    "Evidence",
    "VerifierRegistry",
    "IndexerChainVerifier",
    "StaticChainVerifier",
    "build_registry",
]
