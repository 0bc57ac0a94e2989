"""Persistence — append-only audit log and durable state snapshots."""

from nftmarket.persistence.event_log import EventKind, EventLog, EventRecord
from nftmarket.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
