"""
lumisync: keeps a local folder in step with the LumiNUS workbin.
"""

__version__ = "1.0.0"
