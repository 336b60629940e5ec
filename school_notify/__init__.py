"""
School records realtime notifications

Watches score, attendance and announcement changes in the school backend for
the signed-in user's scope and turns them into persisted, deduplicated
notifications for the app's notification centre.
"""

__version__ = "0.1.0"
