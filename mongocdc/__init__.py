"""
mongocdc - MongoDB change data capture.

Turns MongoDB change streams (optionally preceded by a snapshot of existing
documents) into an ordered, resumable stream of encoded records.
"""

__version__ = "0.1.0"
