"""
lonely-care monitoring core: motion classification, hourly activity
counting, inactivity escalation and multi-channel alert delivery.
"""

__version__ = "1.0.0"
