"""Chat turn pipeline: routing, context, streaming, tools and images."""

from .orchestrator import ChatOrchestrator

__all__ = ["ChatOrchestrator"]
