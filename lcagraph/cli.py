"""
Command-line interface for lcagraph.

Usage:
    lcagraph analyze "Solar Panel" --supplier "Suntech Power"
    lcagraph processes "Solar Panel" --component "silicon wafers, glass, EVA" --technology PERC
    lcagraph graph
"""

import argparse
import asyncio
import json
import sys

from lcagraph.config import DASHSCOPE_API_BASE, RuntimeConfig
from lcagraph.credentials import CredentialError, CredentialManager
from lcagraph.graph.errors import IncompleteWorkflow, StepFailed, WorkflowCancelled, WorkflowError
from lcagraph.observability import configure_logging


def _runtime_config(args: argparse.Namespace) -> RuntimeConfig:
    config = RuntimeConfig()
    if args.model:
        config.model = args.model
        config.api_base = DASHSCOPE_API_BASE if args.model.startswith("openai/qwen") else None
    if args.api_base is not None:
        config.api_base = args.api_base or None
    if args.max_turns is not None:
        config.max_turns = args.max_turns
    return config


def _check_credentials(config: RuntimeConfig) -> None:
    CredentialManager().validate(tools=["web_search"], model=config.model)


def _run(coro) -> int:
    try:
        asyncio.run(coro)
    except CredentialError as e:
        print(str(e), file=sys.stderr)
        return 2
    except StepFailed as e:
        print(f"Error: step '{e.step_id}' failed: {e.error}", file=sys.stderr)
        return 1
    except IncompleteWorkflow as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except WorkflowCancelled as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return 130
    except WorkflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Run the combined product analysis."""
    from lcagraph.agents.product_analysis import analyze_product

    config = _runtime_config(args)

    async def run() -> None:
        _check_credentials(config)
        analysis = await analyze_product(
            args.product,
            args.supplier,
            config=config,
            step_retries=args.retries,
        )
        if args.json:
            print(analysis.to_json())
            return
        print(f"Product: {analysis.product_name}")
        if analysis.supplier:
            print(f"Supplier: {analysis.supplier}")
        print(f"\nBasic information:\n{analysis.product_basic_information}")
        print(f"\nComponents:\n{analysis.product_component}")
        print(f"\nTechnology:\n{analysis.technology_information}")
        print("\nRelated suppliers:")
        for entry in analysis.related_supplier_list:
            print(f"  - {entry}")
        print("\nUnit processes:")
        for i, process in enumerate(analysis.processes_list, 1):
            print(f"  {i}. {process.process_name}")
        print("\nEmission sources:")
        for source in analysis.emission_sources:
            where = f" [{source.process_name}]" if source.process_name else ""
            print(f"  - {source.name}{where}")
        print(f"\n{len(analysis.reference_sources)} reference source(s)")

    return _run(run())


def cmd_processes(args: argparse.Namespace) -> int:
    """Build the processes list for a product."""
    from lcagraph.agents.processes import build_processes_list

    config = _runtime_config(args)

    async def run() -> None:
        _check_credentials(config)
        result = await build_processes_list(
            args.product,
            args.supplier,
            args.component,
            args.technology,
            config=config,
        )
        print(result.model_dump_json(by_alias=True, indent=2))

    return _run(run())


def cmd_graph(args: argparse.Namespace) -> int:
    """Compile the product analysis graph and print its structure."""
    from lcagraph.agents.product_analysis import build_product_analysis_spec

    spec = build_product_analysis_spec(llm=None, lookup=None, config=RuntimeConfig())
    problems = spec.validate()
    if problems:
        for problem in problems:
            print(f"  ✗ {problem}", file=sys.stderr)
        return 1
    print(spec.compile().describe())
    return 0


def _add_model_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", help="LiteLLM model string (default from config)")
    parser.add_argument("--api-base", default=None, help="Override the model endpoint")
    parser.add_argument("--max-turns", type=int, default=None, help="Lookup rounds per step")


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    analyze = subparsers.add_parser("analyze", help="Run the full product analysis")
    analyze.add_argument("product", help="Product name")
    analyze.add_argument("--supplier", help="Supplier name")
    analyze.add_argument("--retries", type=int, default=0, help="Retries per failed step")
    analyze.add_argument("--json", action="store_true", help="Print the result as JSON")
    _add_model_options(analyze)
    analyze.set_defaults(func=cmd_analyze)

    processes = subparsers.add_parser("processes", help="Build the processes list")
    processes.add_argument("product", help="Product name")
    processes.add_argument("--supplier", help="Supplier name")
    processes.add_argument("--component", help="Known product component information")
    processes.add_argument("--technology", help="Known technology information")
    _add_model_options(processes)
    processes.set_defaults(func=cmd_processes)

    graph = subparsers.add_parser("graph", help="Print the product analysis graph")
    graph.set_defaults(func=cmd_graph)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lcagraph",
        description="Gather life-cycle assessment data for a product",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default WARNING)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
