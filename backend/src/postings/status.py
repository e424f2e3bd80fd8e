"""Posting status state machine and posting types.

State Flow:
    CREATED → PENDING_MAPPING|READY_TO_POST
    PENDING_MAPPING → READY_TO_POST
    READY_TO_POST → POSTING_REQUESTED → POSTED|FAILED
    FAILED → POSTING_REQUESTED (retry)

Terminal States: POSTED (corrections happen through cancel postings only)
"""

from enum import Enum
from typing import List

from domain.state_machine import (
    can_transition as _can_transition,
    get_allowed_transitions as _get_allowed,
    validate_transition as _validate,
)


class PostingStatus(str, Enum):
    """ERP posting status enumeration."""
    CREATED = "CREATED"
    PENDING_MAPPING = "PENDING_MAPPING"
    READY_TO_POST = "READY_TO_POST"
    POSTING_REQUESTED = "POSTING_REQUESTED"
    POSTED = "POSTED"
    FAILED = "FAILED"


class PostingType(str, Enum):
    """ERP document types. Each type is always a separate document."""
    # Order documents
    PRODUCT_SALES = "PRODUCT_SALES"
    SHIPPING_FEE = "SHIPPING_FEE"
    PRODUCT_CANCEL = "PRODUCT_CANCEL"
    PRODUCT_SALES_COMMISSION = "PRODUCT_SALES_COMMISSION"
    # Settlement documents
    COMMISSION_EXPENSE = "COMMISSION_EXPENSE"
    SHIPPING_ADJUSTMENT = "SHIPPING_ADJUSTMENT"
    RECEIPT = "RECEIPT"

    @property
    def requires_product_mapping(self) -> bool:
        return self in (PostingType.PRODUCT_SALES, PostingType.PRODUCT_CANCEL)

    @property
    def is_cancel(self) -> bool:
        return self == PostingType.PRODUCT_CANCEL

    @property
    def is_settlement(self) -> bool:
        return self in (
            PostingType.COMMISSION_EXPENSE,
            PostingType.SHIPPING_ADJUSTMENT,
            PostingType.RECEIPT,
        )


ALLOWED_TRANSITIONS = {
    PostingStatus.CREATED: [PostingStatus.PENDING_MAPPING, PostingStatus.READY_TO_POST],
    PostingStatus.PENDING_MAPPING: [PostingStatus.READY_TO_POST],
    PostingStatus.READY_TO_POST: [PostingStatus.POSTING_REQUESTED],
    PostingStatus.POSTING_REQUESTED: [PostingStatus.POSTED, PostingStatus.FAILED],
    PostingStatus.FAILED: [PostingStatus.POSTING_REQUESTED],  # retry
    PostingStatus.POSTED: [],  # Terminal state
}

# Statuses from which a submission may claim the posting
SUBMITTABLE_STATUSES = (PostingStatus.READY_TO_POST, PostingStatus.FAILED)


def validate_transition(current_status: PostingStatus, new_status: PostingStatus) -> None:
    """Validate that a posting transition is allowed.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    _validate("posting", ALLOWED_TRANSITIONS, current_status, new_status)


def can_transition(current_status: PostingStatus, new_status: PostingStatus) -> bool:
    return _can_transition(ALLOWED_TRANSITIONS, current_status, new_status)


def get_allowed_transitions(status: PostingStatus) -> List[PostingStatus]:
    return _get_allowed(ALLOWED_TRANSITIONS, status)
