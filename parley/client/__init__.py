from parley.client.state import ConversationState, EditPayload, MessageStatus
from parley.client.transport import ChatTransport, TurnContext, build_turn_request

__all__ = [
    "ChatTransport",
    "ConversationState",
    "EditPayload",
    "MessageStatus",
    "TurnContext",
    "build_turn_request",
]
