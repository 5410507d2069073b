"""
CeDeFi transaction consensus and bank-broadcast services.
"""

__version__ = "1.0.0"
