"""Durable state: the metadata store and the append-only event log."""
