"""Durable JSON tables (channel, workspace, action payload)."""

from threadpilot.stores.channels import ChannelMapping, ChannelStore
from threadpilot.stores.payloads import PayloadStore, interrupt_key, question_key
from threadpilot.stores.workspaces import Workspace, WorkspaceStore

__all__ = [
    "ChannelMapping",
    "ChannelStore",
    "PayloadStore",
    "Workspace",
    "WorkspaceStore",
    "interrupt_key",
    "question_key",
]
