"""
relaybot - routes chat messages to a long-lived agent runtime.
"""

__version__ = "0.1.0"
__logo__ = "🛰️"
