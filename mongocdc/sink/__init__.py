"""
Write-side handlers for replaying CDC records into MongoDB.
"""

from .cdc_handlers import ChangeStreamHandler, DebeziumMongoHandler

__all__ = ["ChangeStreamHandler", "DebeziumMongoHandler"]
