from dispatch.db.database import Base, SessionLocal, create_tables, engine
from dispatch.db.models import QueuedActionRecord

__all__ = [
    'Base',
    'QueuedActionRecord',
    'engine',
    'create_tables',
    'SessionLocal',
]
