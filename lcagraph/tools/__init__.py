"""Lookup tools available to research steps."""

from lcagraph.tools.web_search import TavilySearchTool

__all__ = ["TavilySearchTool"]
