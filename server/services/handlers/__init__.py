"""Node handlers package.

Handlers are grouped by category:
- control.py: Trigger, Delay, Wait for Reply, Condition, Split Path, End
- messaging.py: Send Message, Send Email (reputation gated)
- lead.py: Add Tag, Remove Tag, Update Lead, Create Task
- integration.py: Webhook (reputation gated), AI Agent
- common.py: lead guard and reputation gate helpers
"""

from .control import (
    handle_trigger,
    handle_delay,
    handle_wait_for_reply,
    handle_condition,
    handle_split_path,
    handle_end,
)

from .messaging import (
    handle_send_message,
    handle_send_email,
)

from .lead import (
    handle_add_tag,
    handle_remove_tag,
    handle_update_lead,
    handle_create_task,
)

from .integration import (
    handle_webhook,
    handle_ai_agent,
)

__all__ = [
    'handle_trigger',
    'handle_delay',
    'handle_wait_for_reply',
    'handle_condition',
    'handle_split_path',
    'handle_end',
    'handle_send_message',
    'handle_send_email',
    'handle_add_tag',
    'handle_remove_tag',
    'handle_update_lead',
    'handle_create_task',
    'handle_webhook',
    'handle_ai_agent',
]
