"""
swapflow: workflow session engine for battery swap and customer registration.
"""

__version__ = "0.1.0"
