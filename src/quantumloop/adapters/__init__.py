"""Worker backends: how each executor CLI is invoked."""
