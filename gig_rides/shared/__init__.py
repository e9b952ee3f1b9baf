# gig_rides/shared/__init__.py
"""
Общий слой: модели сообщений протокола.
"""
