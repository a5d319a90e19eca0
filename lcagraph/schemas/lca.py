"""
LCA data models.

Field names are snake_case in Python and camelCase on the wire, so the
same models validate model output, workflow state and the final report.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator

CAMEL_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class ReferenceSource(BaseModel):
    """A search result backing a piece of gathered information."""

    title: str = ""
    url: str = ""
    content: str = ""
    score: float | None = Field(default=None, description="Search relevance score")

    model_config = {"extra": "ignore"}


def _coerce_sources(value: Any) -> Any:
    # Models often cite plain URLs instead of full source objects
    if isinstance(value, list):
        return [{"url": item} if isinstance(item, str) else item for item in value]
    return value


class UnitProcess(BaseModel):
    """One production step of the product."""

    process_name: str = Field(alias="processName", description="process name")
    process_description: str | None = Field(
        default=None, alias="processDescription", description="process description"
    )
    reference_sources: list[ReferenceSource] = Field(
        default_factory=list, alias="referenceSources", description="reference sources"
    )

    model_config = CAMEL_CONFIG

    @field_validator("reference_sources", mode="before")
    @classmethod
    def _sources_from_urls(cls, value: Any) -> Any:
        return _coerce_sources(value)


class EmissionSource(BaseModel):
    """An emission source identified for a unit process."""

    name: str = Field(description="emission source name")
    description: str | None = Field(
        default=None, description="detailed description of the emission source"
    )
    process_name: str | None = Field(
        default=None, alias="processName", description="unit process this source belongs to"
    )
    reference_sources: list[ReferenceSource] = Field(
        default_factory=list, alias="referenceSources", description="reference sources"
    )

    model_config = CAMEL_CONFIG

    @field_validator("reference_sources", mode="before")
    @classmethod
    def _sources_from_urls(cls, value: Any) -> Any:
        return _coerce_sources(value)


class ProductAnalysis(BaseModel):
    """Everything gathered for one product."""

    product_name: str = Field(alias="productName")
    supplier: str | None = None
    product_basic_information: str = Field(default="", alias="productBasicInformation")
    product_component: str = Field(default="", alias="productComponent")
    related_supplier_list: list[str] = Field(default_factory=list, alias="relatedSupplierList")
    technology_information: str = Field(default="", alias="technologyInformation")
    processes_list: list[UnitProcess] = Field(default_factory=list, alias="processesList")
    emission_sources: list[EmissionSource] = Field(
        default_factory=list, alias="emissionSources"
    )
    reference_sources: list[ReferenceSource] = Field(
        default_factory=list, alias="referenceSources"
    )
    incomplete_steps: list[str] = Field(
        default_factory=list,
        alias="incompleteSteps",
        description="Best-effort steps that failed and contributed nothing",
    )
    skipped_processes: list[str] = Field(
        default_factory=list,
        alias="skippedProcesses",
        description="Unit processes whose emission scan failed",
    )

    model_config = CAMEL_CONFIG

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)
