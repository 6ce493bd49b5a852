"""
Shared utilities: configuration, logging, device identity and ZeroMQ messaging.
"""
