"""
Conversation core: normalization, aggregation, metrics, filtering and
optimistic mutations over the lead inbox.
"""

from .aggregator import aggregate, process_conversation
from .coordinator import BulkResult, MutationCoordinator
from .metrics import calculate_conversation_metrics, calculate_trends
from .pipeline import ConversationFilters, SortConfig, apply_view
from .view import ConversationView

__all__ = [
    "aggregate",
    "process_conversation",
    "calculate_conversation_metrics",
    "calculate_trends",
    "ConversationFilters",
    "SortConfig",
    "apply_view",
    "ConversationView",
    "MutationCoordinator",
    "BulkResult",
]
