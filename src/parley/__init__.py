"""
Parley - Autonomous agent for end-to-end encrypted conversations

Keeps a local replica of every conversation an inbox takes part in,
routes the real-time message stream to an application handler, and
enforces group membership and role rules.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

from .agent import Agent, HealthStatus
from .config import AgentConfig, Config
from .constants import APP_NAME, VERSION
from .errors import (
    AuthenticationRejected,
    ConfigError,
    ErrorCode,
    InvalidMutation,
    ParleyError,
    PersistenceFailure,
    StreamUnavailable,
    TransportUnavailable,
)
from .group import GroupStateMachine
from .models import (
    ConsentState,
    DirectConversation,
    GroupConversation,
    GroupState,
    Message,
    PermissionPolicy,
    PermissionPolicySet,
    Role,
)
from .pipeline import StageOutcome
from .store import ConversationFilter, ReplicaStore
from .stream import ConversationContext, MessageStreamRouter, NoAction, Reply
from .sync import ConversationSynchronizer, SyncReport

__all__ = [
    "APP_NAME",
    "VERSION",
    "Agent",
    "AgentConfig",
    "AuthenticationRejected",
    "Config",
    "ConfigError",
    "ConsentState",
    "ConversationContext",
    "ConversationFilter",
    "ConversationSynchronizer",
    "DirectConversation",
    "ErrorCode",
    "GroupConversation",
    "GroupState",
    "GroupStateMachine",
    "HealthStatus",
    "InvalidMutation",
    "Message",
    "MessageStreamRouter",
    "NoAction",
    "ParleyError",
    "PermissionPolicy",
    "PermissionPolicySet",
    "PersistenceFailure",
    "ReplicaStore",
    "Reply",
    "Role",
    "StageOutcome",
    "StreamUnavailable",
    "SyncReport",
    "TransportUnavailable",
    "__author__",
    "__license__",
    "__version__",
]
