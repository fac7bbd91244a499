"""
Central constants for the club admin console.
"""
from __future__ import annotations

# Account lifecycle: pending_approval -> active | rejected; active <-> suspended; * -> deleted
USER_STATES = ("pending_approval", "active", "suspended", "rejected", "deleted")

USER_ROLES = ("member", "admin")

BOARD_POSITIONS = (
    "president",
    "vice_president",
    "secretary",
    "treasurer",
    "clear_lake_cabin_master",
    "tahoe_cabin_master",
    "event_director",
    "member_outreach",
    "membership_director",
)

BOARD_POSITION_LABELS = {
    "president": "President",
    "vice_president": "Vice President",
    "secretary": "Secretary",
    "treasurer": "Treasurer",
    "clear_lake_cabin_master": "Clear Lake Cabin Master",
    "tahoe_cabin_master": "Tahoe Cabin Master",
    "event_director": "Event Director",
    "member_outreach": "Member Outreach & Events",
    "membership_director": "Membership Director",
}

# "none" and "lifetime" are filter values only; subscriptions carry single/family.
MEMBERSHIP_TYPES = ("single", "family", "lifetime", "none")

# Yearly plan prices in whole dollars
MEMBERSHIP_PLANS = {
    "single": {"name": "Single", "amount": 45},
    "family": {"name": "Family", "amount": 65},
}

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})

USER_EXPORT_FIELDS = {
    "id": "User ID",
    "email": "Email",
    "first_name": "First Name",
    "last_name": "Last Name",
    "phone_number": "Phone Number",
    "state": "Account State",
}

POST_STATES = ("draft", "published", "deleted")

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
MAX_UPLOAD_ENTRIES = 10
THUMBNAIL_SIZE = 500
IMAGE_VERSIONS = ("thumbnail", "optimized", "raw")
