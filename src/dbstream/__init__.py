"""
dbstream: Kafka integration for relational-store-backed applications.

Inbound, batches of keyed messages are sliced and bulk-upserted into tables.
Outbound, checkpointed pollers republish table changes to Kafka.
"""

__version__ = "1.0.0"
