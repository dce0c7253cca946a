"""Order Desk: provider order composition and replenishment engine"""

__version__ = "1.0.0"
