"""Shared rendering for listing responses."""

from datetime import datetime

from logview.auth.permissions import Permission


def listing_meta(permission: Permission, now: datetime) -> dict:
    """Date bounds for the listing's filter form.

    min_date is the oldest viewable day; max_date is today.
    """
    return {
        "min_date": permission.oldest_viewable(now).date().isoformat(),
        "max_date": now.date().isoformat(),
        "max_resource_age_seconds": int(permission.max_resource_age.total_seconds()),
    }
