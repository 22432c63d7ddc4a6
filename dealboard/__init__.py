"""
dealboard - CRM deal mirror, sales-contest leaderboards and monthly rollups
"""
__version__ = "1.0.0"
