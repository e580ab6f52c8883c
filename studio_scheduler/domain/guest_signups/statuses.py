PENDING_APPROVAL = "PENDING_APPROVAL"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
RESCHEDULE_PROPOSED = "RESCHEDULE_PROPOSED"

STATUSES = {PENDING_APPROVAL, APPROVED, REJECTED, RESCHEDULE_PROPOSED}
# An approved guest takes a seat in the instance.
SEAT_HOLDING_STATUSES = (APPROVED,)
