# Import all SQLAlchemy models so Base.metadata.create_all() sees every table.
# Tethra.database.init_db imports this package for side effects.

from .chat_models import ChatMessage, Conversation  # noqa: F401
