"""
Outcome notification delivery: a durable queue of messages for the
messaging bot, and the worker that drains it with retry and backoff.
"""
