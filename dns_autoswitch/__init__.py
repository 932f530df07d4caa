"""
DNS Autoswitch
Measures DNS server latency and switches to a faster server without flapping
"""

from .version import __author__, __version__

__all__ = ["__author__", "__version__"]
