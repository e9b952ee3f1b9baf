# gig_rides/__init__.py
"""
gig_rides — децентрализованный подбор поездок поверх релейной сети событий.
"""

__version__ = "0.3.0"
