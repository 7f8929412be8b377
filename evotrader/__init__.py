"""evotrader - evolutionary trading population control core"""

__version__ = "0.1.0"
