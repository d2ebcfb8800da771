"""Shared constants for ratify."""

SYSTEM_ACTOR = "system"

REVIEW_WAIT_POINT = "reviewer_decision"
DECISION_SCHEMA = "reviewer-decision/v1"

INSUFFICIENT_BALANCE = "insufficient-balance"
ACCOUNT_NOT_FOUND = "account-not-found"

ENTITY_REQUEST = "request"
ENTITY_INSTANCE = "instance"
ENTITY_ACCOUNT = "account"

DEFAULT_PLANS = {
    "one_time": 1,
    "standard_4_month": 4,
    "premium_8_month": 8,
}
