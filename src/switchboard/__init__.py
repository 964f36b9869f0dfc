"""Switchboard — live support-chat dispatch backend.

Assigns incoming client conversations to staff agents, streams chat
messages in real time, enforces a per-agent concurrency cap, and keeps
the shared deadline ribbon and missed-call queue in sync across every
open dashboard.
"""

__version__ = "0.1.0"
