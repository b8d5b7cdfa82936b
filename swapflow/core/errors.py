"""
Base exception for the workflow engine.

Concrete errors live beside the component that raises them.
"""


class SwapflowError(Exception):
    """Root of all engine errors."""
    pass


class ConfigError(SwapflowError, ValueError):
    """Raised when settings fail validation."""
    pass
