"""
pgimg - PostgreSQL container image tooling.

Auto-configuration entrypoint, extension manifest resolver and
Docker-based image test harness.
"""

__version__ = "1.0.0"
__author__ = "aza-pg maintainers"
