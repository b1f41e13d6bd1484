"""Group chat assistant backend."""
