"""Built-in tools registered on a LocalToolBackend."""
