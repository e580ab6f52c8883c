ENROLLMENT_ACTIVE = "ACTIVE"
ENROLLMENT_CANCELLED = "CANCELLED"

ENROLLMENT_STATUSES = {ENROLLMENT_ACTIVE, ENROLLMENT_CANCELLED}

SOURCE_DIRECT = "DIRECT"
SOURCE_WAITLIST = "WAITLIST"
SOURCE_SUBSCRIPTION = "SUBSCRIPTION"

SOURCES = {SOURCE_DIRECT, SOURCE_WAITLIST, SOURCE_SUBSCRIPTION}

CANCEL_REASON_CLIENT = "client_cancelled"
CANCEL_REASON_INSTANCE_DELETED = "instance_deleted"
