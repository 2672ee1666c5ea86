from .orchestrator import ChatOrchestrator, ChatReply
from .session import ConversationSession, Message, Role

__all__ = ["ChatOrchestrator", "ChatReply", "ConversationSession", "Message", "Role"]
