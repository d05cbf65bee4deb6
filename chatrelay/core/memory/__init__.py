"""Durable conversation transcript."""
