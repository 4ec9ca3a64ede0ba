"""会话状态：ConversationStore 与 StreamingCoordinator。"""

from chat_core.state.store import ConversationStore, merge_message_histories
from chat_core.state.streaming import StreamingCoordinator

__all__ = ["ConversationStore", "StreamingCoordinator", "merge_message_histories"]
