"""
Slot Hive - Scout/Sniper coordination for appointment slot hunting
"""

__version__ = "1.0.0"
