"""Deferred-completion pipeline: store, change feed, processor, client and poller."""
