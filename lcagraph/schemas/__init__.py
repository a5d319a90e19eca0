"""Data models for gathered LCA information."""

from lcagraph.schemas.lca import EmissionSource, ProductAnalysis, ReferenceSource, UnitProcess

__all__ = ["ReferenceSource", "UnitProcess", "EmissionSource", "ProductAnalysis"]
