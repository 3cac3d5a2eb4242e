"""Run configuration (YAML file plus CLI overrides)."""
