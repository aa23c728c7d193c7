"""ULID primary keys for slots, grants, bookings and ledger rows."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())
