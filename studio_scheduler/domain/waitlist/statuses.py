PENDING = "PENDING"
NOTIFIED = "NOTIFIED"
BOOKED = "BOOKED"
EXPIRED = "EXPIRED"
CANCELLED_BY_USER = "CANCELLED_BY_USER"

STATUSES = {PENDING, NOTIFIED, BOOKED, EXPIRED, CANCELLED_BY_USER}
ACTIVE_STATUSES = (PENDING, NOTIFIED)
TERMINAL_STATUSES = {BOOKED, EXPIRED, CANCELLED_BY_USER}


def normalize_status(value: str) -> str:
    upper = value.upper()
    if upper not in STATUSES:
        raise ValueError("Invalid waitlist status")
    return upper
