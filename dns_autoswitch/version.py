# dns_autoswitch/version.py
"""Version information for dns-autoswitch"""

__version__ = "1.0.0"
__author__ = "DNS Autoswitch Team"
