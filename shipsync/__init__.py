"""shipsync - fulfillment provider sync and billing attribution engine"""

__version__ = "0.1.0"
