"""Shard configurations, shard group servers and clerks, a lease-based shard controller, and socket RPC."""

__version__ = "0.1.0"