"""Scheduling engine: state store, DAG queries, workers, merges, the loop."""
