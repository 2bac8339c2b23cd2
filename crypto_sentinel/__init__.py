"""
Crypto Sentinel
Risk-managed core/satellite spot trading bot driven by technicals and news sentiment
"""

__version__ = "1.0.0"
