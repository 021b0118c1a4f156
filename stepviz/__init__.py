"""Step-by-step Python execution tracer and memory visualizer."""

__version__ = "0.1.0"
