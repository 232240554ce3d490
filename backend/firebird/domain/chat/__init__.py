"""Chat domain exports."""

from .buffer import MessageOrderingBuffer
from .chat_list import ChatListAggregator, apply_new_message
from .realtime import InMemoryRealtimeChannel, RedisRealtimeChannel
from .repo import ChatRepository, InMemoryChatRepository, PostgresChatRepository
from .session import BufferState, ChatSession

__all__ = [
	"BufferState",
	"ChatListAggregator",
	"ChatRepository",
	"ChatSession",
	"InMemoryChatRepository",
	"InMemoryRealtimeChannel",
	"MessageOrderingBuffer",
	"PostgresChatRepository",
	"RedisRealtimeChannel",
	"apply_new_message",
]
