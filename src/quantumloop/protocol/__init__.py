"""On-disk protocol: plan document model and atomic IO helpers."""
