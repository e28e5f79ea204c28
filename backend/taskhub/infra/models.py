"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so foreign keys resolve and
``Base.metadata`` is complete for ``create_all`` and Alembic autogenerate.
"""

from taskhub.domain.users import db_models as users_db_models  # noqa: F401
from taskhub.domain.providers import db_models as providers_db_models  # noqa: F401
from taskhub.domain.jobs import db_models as jobs_db_models  # noqa: F401
from taskhub.domain.service_requests import db_models as service_requests_db_models  # noqa: F401
from taskhub.domain.quotes import db_models as quotes_db_models  # noqa: F401
from taskhub.domain.escrow import db_models as escrow_db_models  # noqa: F401
from taskhub.domain.notifications import db_models as notifications_db_models  # noqa: F401
