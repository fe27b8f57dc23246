from adescrow.models.user import User
from adescrow.models.channel import Channel
from adescrow.models.deal import Deal
from adescrow.models.deal_timeline import DealTimeline
from adescrow.models.escrow import Escrow, EscrowStatus
from adescrow.models.transaction import Transaction, TransactionStatus, TransactionType
from adescrow.models.published_post import PostStatus, PublishedPost
from adescrow.models.post_verification import PostVerification

__all__ = [
    "User",
    "Channel",
    "Deal",
    "DealTimeline",
    "Escrow",
    "EscrowStatus",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "PublishedPost",
    "PostStatus",
    "PostVerification",
]
