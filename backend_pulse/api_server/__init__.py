"""
API server package — HTTP interface and server lifecycle.

Serves the health, time and static endpoints through the recovery and
logging middleware chain, and owns graceful shutdown of the listener.
"""
