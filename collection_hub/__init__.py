"""
ITAD Collection Hub

Booking/Job workflow backend for IT asset collection: status orchestration,
field evidence, notifications and chain-of-custody documents.
"""

__version__ = "1.0.0"
