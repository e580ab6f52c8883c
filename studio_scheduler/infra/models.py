"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so that ``Base.metadata`` is
complete for ``create_all``, Alembic autogenerate and table cleanup in tests.
"""

from studio_scheduler.domain.series import db_models as series_db_models  # noqa: F401
from studio_scheduler.domain.sessions import db_models as session_db_models  # noqa: F401
from studio_scheduler.domain.waitlist import db_models as waitlist_db_models  # noqa: F401
from studio_scheduler.domain.subscriptions import db_models as subscription_db_models  # noqa: F401
from studio_scheduler.domain.appointments import db_models as appointment_db_models  # noqa: F401
from studio_scheduler.domain.guest_signups import db_models as guest_signup_db_models  # noqa: F401
from studio_scheduler.domain.outbox import db_models as outbox_db_models  # noqa: F401
