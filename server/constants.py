"""Centralized constants for node types, trigger types and channels.

Single source of truth for the string identifiers used by workflow
definitions, the trigger matcher and the node executor registry.
"""

from typing import FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

TRIGGER_NODE_TYPE = 'trigger'
END_NODE_TYPE = 'end'

SEND_NODE_TYPES: FrozenSet[str] = frozenset([
    'send_message',
    'send_email',
])

LEAD_NODE_TYPES: FrozenSet[str] = frozenset([
    'add_tag',
    'remove_tag',
    'update_lead',
    'create_task',
])

CONTROL_NODE_TYPES: FrozenSet[str] = frozenset([
    TRIGGER_NODE_TYPE,
    'delay',
    'wait_for_reply',
    'condition',
    'split_path',
    END_NODE_TYPE,
])

INTEGRATION_NODE_TYPES: FrozenSet[str] = frozenset([
    'webhook',
    'ai_agent',
])

ALL_NODE_TYPES: FrozenSet[str] = (
    SEND_NODE_TYPES |
    LEAD_NODE_TYPES |
    CONTROL_NODE_TYPES |
    INTEGRATION_NODE_TYPES
)

# =============================================================================
# TRIGGER / EVENT TYPES
# =============================================================================

LEAD_EVENT_TYPES: FrozenSet[str] = frozenset([
    'lead_created',
    'lead_updated',
])

TAG_EVENT_TYPES: FrozenSet[str] = frozenset([
    'tag_added',
    'tag_removed',
])

MESSAGE_EVENT_TYPES: FrozenSet[str] = frozenset([
    'message_received',
    'message_sent',
])

CONVERSATION_EVENT_TYPES: FrozenSet[str] = frozenset([
    'conversation_started',
    'conversation_closed',
])

OTHER_EVENT_TYPES: FrozenSet[str] = frozenset([
    'campaign_completed',
    'form_submitted',
    'webhook_received',
    'schedule',
    'api_call',
])

WORKFLOW_TRIGGER_TYPES: FrozenSet[str] = (
    LEAD_EVENT_TYPES |
    TAG_EVENT_TYPES |
    MESSAGE_EVENT_TYPES |
    CONVERSATION_EVENT_TYPES |
    OTHER_EVENT_TYPES
)

# Inbound events able to resume a suspended wait_for_reply node
REPLY_EVENT_TYPE = 'message_received'

# =============================================================================
# CHANNELS
# =============================================================================

# Reputation gate key for outbound webhooks
WEBHOOK_CHANNEL = 'webhook'
