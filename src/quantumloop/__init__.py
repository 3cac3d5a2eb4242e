"""quantum-loop: dependency-graph task loop with isolated parallel workers."""

__version__ = "0.3.0"
