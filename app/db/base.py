# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models in the Attention Monitor service.
    """
    pass


# Import ORM models so that Base.metadata is aware of them
# This import should stay at the bottom to avoid circular dependencies.
# Module imports (not names) so that importing a model module first still works.
import app.models.meeting  # noqa: E402,F401
import app.models.attention_log  # noqa: E402,F401
