"""Platform-origin token classification."""

from post_token_pnl.provenance.classifier import (
    ProvenanceCache,
    ProvenanceClassifier,
    Verdict,
    matches_platform_bytecode,
)

__all__ = [
    "ProvenanceCache",
    "ProvenanceClassifier",
    "Verdict",
    "matches_platform_bytecode",
]
