"""
Database package initialization

Exports session management, utilities and the record store
"""

from .config import (
    get_engine,
    get_session_factory,
    create_db_engine,
    create_session_factory,
    get_db,
    init_db,
    drop_db,
    check_db_health,
    get_db_info
)

from backend.models.database import (
    Base,
    Entry,
    Setting
)

from .record_store import (
    RecordStore,
    SQLRecordStore,
    UpdateReport,
    RecordNotFoundError,
    IdentifierCollisionError,
    resolve_collision
)

__all__ = [
    # Session management
    'get_engine',
    'get_session_factory',
    'create_db_engine',
    'create_session_factory',
    'get_db',

    # Database operations
    'init_db',
    'drop_db',
    'check_db_health',
    'get_db_info',

    # Models
    'Base',
    'Entry',
    'Setting',

    # Record store
    'RecordStore',
    'SQLRecordStore',
    'UpdateReport',
    'RecordNotFoundError',
    'IdentifierCollisionError',
    'resolve_collision'
]
