"""
Request defense pipeline: WAF, IP access control, rate limiting and alerting.
"""

__version__ = "0.1.0"
