"""Error taxonomy for the deconvolution engine."""

from __future__ import annotations


class RCTDError(Exception):
    """Base class for deconvolution errors."""


class InfeasibleConstraint(RCTDError):
    """The quadratic program reported no feasible or a singular solution."""


class EmptyLocation(RCTDError):
    """A location has a non-positive total count and cannot be solved."""


class MissingGene(RCTDError, KeyError):
    """A gene requested for the model is absent from one of the inputs."""

    def __init__(self, genes, source: str):
        self.genes = list(genes)
        self.source = source
        preview = ", ".join(self.genes[:5])
        more = "" if len(self.genes) <= 5 else f" (+{len(self.genes) - 5} more)"
        super().__init__(f"{len(self.genes)} gene(s) missing from {source}: {preview}{more}")

    def __str__(self) -> str:
        return self.args[0]


class WorkerPoolUnavailable(RCTDError):
    """A worker pool could not be constructed."""


class NumericNonConvergence(RuntimeWarning):
    """IRWLS reached its iteration cap before the weights stabilised."""
