"""CareBridge - hospital appointment and patient queue backend"""

__version__ = "1.0.0"
