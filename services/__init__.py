"""
Persistence services backed by SQLite: conversations and state snapshots,
TTL-bound agent state with its periodic sweep, and domain fact storage.
"""
