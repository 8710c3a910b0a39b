"""Service layer for chatbridge.

Stores, credential handling, bridge clients and the connection status
state machine. Services take a SQLAlchemy ``Session`` and never commit
on behalf of a caller that did not ask them to write.
"""
