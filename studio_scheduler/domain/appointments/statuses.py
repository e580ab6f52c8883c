AVAILABLE = "AVAILABLE"
PENDING_APPROVAL = "PENDING_APPROVAL"
SCHEDULED = "SCHEDULED"
CONFIRMED = "CONFIRMED"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
REJECTED = "REJECTED"

STATUSES = {AVAILABLE, PENDING_APPROVAL, SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, REJECTED}
# Statuses that hold the staff member's time.
BLOCKING_STATUSES = (PENDING_APPROVAL, SCHEDULED, CONFIRMED, COMPLETED)
CANCELLABLE_STATUSES = {AVAILABLE, PENDING_APPROVAL, SCHEDULED, CONFIRMED}

PHYSIOTHERAPY = "PHYSIOTHERAPY"
PERSONAL_TRAINING = "PERSONAL_TRAINING"
OTHER = "OTHER"

CATEGORIES = {PHYSIOTHERAPY, PERSONAL_TRAINING, OTHER}


def normalize_category(value: str) -> str:
    upper = value.upper()
    if upper not in CATEGORIES:
        raise ValueError("Invalid appointment category")
    return upper
