"""Context and token-budget services."""
