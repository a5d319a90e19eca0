"""Research steps that only need the product name and supplier."""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from lcagraph.agents.base import ResearchStep, reference_sources_field
from lcagraph.graph.step import OutputField, StepSpec
from lcagraph.graph.tool_loop import LoopConfig, LookupTool
from lcagraph.llm.provider import LLMProvider

PRODUCT_INPUTS = ["productName", "supplier"]


class ProductInformation(BaseModel):
    product_information: str = Field(description="comprehensive product information")


class ComponentInformation(BaseModel):
    component_information: str = Field(description="detailed component information")


class SupplierList(BaseModel):
    supplier_list: list[str] = Field(
        default_factory=list, description="list of relevant suppliers with descriptions"
    )


class TechnologyInformation(BaseModel):
    technology_information: str = Field(description="comprehensive technology information")


BASIC_INFO_PROMPT = """You are an expert assistant specialized in gathering comprehensive product information.
When provided with a product name, your task is to:
1. Search for authoritative sources about the product
2. Focus on gathering:
   - Product classification and category
   - Key characteristics and properties
   - Common applications and uses
   - Industry standards and certifications
3. Ensure information accuracy by cross-referencing multiple sources
4. Prioritize technical and official documentation

Provide clear, factual information with proper source attribution."""

COMPONENT_PROMPT = """You are an expert assistant specialized in analyzing product compositions and materials.
When provided with a product name and optional supplier, your task is to:
1. Search for detailed information about:
   - Material composition and percentages
   - Chemical constituents
   - Key components and their specifications
   - Manufacturing materials
2. Focus on:
   - Technical specifications
   - Material safety data sheets
   - Product documentation
   - Industry standards
3. Verify information across multiple reliable sources
4. Prioritize supplier-specific information when available

Provide detailed, accurate composition information with proper source attribution."""

SUPPLIER_PROMPT = """You are an expert assistant specialized in identifying and analyzing suppliers in manufacturing industries.
When provided with a product name and optional supplier, your task is to:
1. Search for and identify:
   - Major manufacturers and suppliers of the product
   - Key market players in the industry
   - Regional and global suppliers
   - Specialized/niche suppliers if applicable
2. Focus on gathering:
   - Company profiles and capabilities
   - Manufacturing locations and facilities
   - Quality certifications and standards
   - Market presence and reputation
3. Prioritize information from:
   - Industry directories and databases
   - Company websites and annual reports
   - Trade associations and industry reports
   - Business news and market analyses

Provide comprehensive, accurate supplier information with proper source attribution."""

TECHNOLOGY_PROMPT = """You are an expert assistant specialized in analyzing manufacturing technologies and processes.
When provided with a product name and optional supplier, your task is to:
1. Research and analyze key technological aspects:
   - Manufacturing technologies and methods
   - Production equipment and machinery
   - Process control systems
   - Quality assurance technologies
2. Focus on gathering information about:
   - Technical specifications and parameters
   - Process efficiency and optimization
   - Environmental control technologies
3. Pay special attention to:
   - Best available technologies (BAT)
   - Energy efficiency aspects
   - Environmental performance

Provide detailed, technically accurate information with proper source attribution.
Focus on current and emerging technologies relevant to the product's manufacturing."""

SUPPLIER_EXTRACTION_PROMPT = """Summarize the gathered supplier information into a clear, structured list.
Each supplier entry should include:
- Company name
- Brief description of capabilities
- Key products/services
- Notable certifications or qualifications"""

TECHNOLOGY_EXTRACTION_PROMPT = """Summarize the gathered technology information into a clear, structured format.
Include the following aspects:
- Manufacturing technologies and methods
- Key equipment and machinery
- Process control and automation
- Quality assurance systems
- Environmental control technologies
- Energy efficiency features

Organize the information in a logical flow, from basic technologies to advanced features."""


def _product_step(
    step_id: str,
    name: str,
    research: ResearchStep,
    writes: str,
    **spec_kwargs: Any,
) -> StepSpec:
    return StepSpec(
        id=step_id,
        name=name,
        work=research,
        input_keys=PRODUCT_INPUTS,
        output_fields=[OutputField(name=writes), reference_sources_field()],
        **spec_kwargs,
    )


def basic_info_step(
    llm: LLMProvider, lookup: LookupTool | None, loop_config: LoopConfig | None = None, **spec_kwargs
) -> StepSpec:
    """getBasicInfo: classification, properties and uses of the product."""

    def map_output(result: ProductInformation, _inputs: Mapping[str, Any]) -> dict[str, Any]:
        return {"productBasicInformation": result.product_information}

    research = ResearchStep(
        llm=llm,
        lookup=lookup,
        system_prompt=BASIC_INFO_PROMPT,
        extraction_prompt="Summarize the gathered product information into a clear, structured format.",
        output_model=ProductInformation,
        map_output=map_output,
        loop_config=loop_config,
    )
    return _product_step(
        "getBasicInfo", "Product basic information", research, "productBasicInformation",
        **spec_kwargs,
    )


def component_step(
    llm: LLMProvider, lookup: LookupTool | None, loop_config: LoopConfig | None = None, **spec_kwargs
) -> StepSpec:
    """getComponent: material composition of the product."""

    def map_output(result: ComponentInformation, _inputs: Mapping[str, Any]) -> dict[str, Any]:
        return {"productComponent": result.component_information}

    research = ResearchStep(
        llm=llm,
        lookup=lookup,
        system_prompt=COMPONENT_PROMPT,
        extraction_prompt=(
            "Summarize the gathered component information into a clear, structured format."
        ),
        output_model=ComponentInformation,
        map_output=map_output,
        loop_config=loop_config,
    )
    return _product_step(
        "getComponent", "Product components", research, "productComponent", **spec_kwargs
    )


def supplier_step(
    llm: LLMProvider, lookup: LookupTool | None, loop_config: LoopConfig | None = None, **spec_kwargs
) -> StepSpec:
    """getSupplier: manufacturers and suppliers of the product."""

    def map_output(result: SupplierList, _inputs: Mapping[str, Any]) -> dict[str, Any]:
        return {"relatedSupplierList": list(result.supplier_list)}

    research = ResearchStep(
        llm=llm,
        lookup=lookup,
        system_prompt=SUPPLIER_PROMPT,
        extraction_prompt=SUPPLIER_EXTRACTION_PROMPT,
        output_model=SupplierList,
        map_output=map_output,
        loop_config=loop_config,
    )
    return _product_step(
        "getSupplier", "Related suppliers", research, "relatedSupplierList", **spec_kwargs
    )


def technology_step(
    llm: LLMProvider, lookup: LookupTool | None, loop_config: LoopConfig | None = None, **spec_kwargs
) -> StepSpec:
    """getTechnology: manufacturing technologies used for the product."""

    def map_output(result: TechnologyInformation, _inputs: Mapping[str, Any]) -> dict[str, Any]:
        return {"technologyInformation": result.technology_information}

    research = ResearchStep(
        llm=llm,
        lookup=lookup,
        system_prompt=TECHNOLOGY_PROMPT,
        extraction_prompt=TECHNOLOGY_EXTRACTION_PROMPT,
        output_model=TechnologyInformation,
        map_output=map_output,
        loop_config=loop_config,
    )
    return _product_step(
        "getTechnology", "Technology information", research, "technologyInformation",
        **spec_kwargs,
    )
